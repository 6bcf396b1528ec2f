"""
Stripe integration: customers, PaymentIntents, SetupIntents, refunds and the webhook.
"""
