"""
Transactional email (Brevo) and the in-process event dispatcher.
"""
