"""
External API clients

- record_store: Kommo leads/contacts API
- meta_ads: Marketing API ad hierarchy lookups
"""
