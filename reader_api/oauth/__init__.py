"""
OAuth 2.1 authorization server (authorization code + PKCE).

Third-party clients register dynamically, send the user through the
authorization endpoint for consent, then exchange the resulting code for
rotating access/refresh token pairs.
"""
