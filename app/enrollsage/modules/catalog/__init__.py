"""
Storefront catalog: categories, products and reviews.
"""
