"""
Storefront cart, checkout and order fulfilment.
"""
