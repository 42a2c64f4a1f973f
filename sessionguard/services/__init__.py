"""Domain services: token families, lockout, events, webhooks, auth orchestration"""
