"""
Storefront customer account pages.
"""
