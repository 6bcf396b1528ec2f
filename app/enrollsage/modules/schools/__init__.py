"""
Schools (tenants) and the platform console.

A school owns its members, school years, families and admissions pipeline.
Only superadmins create schools or change their status.
"""
