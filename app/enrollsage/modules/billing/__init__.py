"""
Tuition billing: invoices, payments, payment plans and account credits.

All amounts are integer cents.
"""
