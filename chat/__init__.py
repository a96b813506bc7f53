"""
Chat session components for interactive CV portals.

Session lifecycle (creation, expiry, rate limiting, message appends) and the
error taxonomy shared by the HTTP layer.
"""
