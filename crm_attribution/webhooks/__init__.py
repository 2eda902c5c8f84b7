"""
Webhook handlers
"""
