"""
Discount codes and gift cards.
"""
