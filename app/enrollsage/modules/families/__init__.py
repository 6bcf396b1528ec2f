"""
Households, guardians and students.
"""
