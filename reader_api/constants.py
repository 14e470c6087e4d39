"""
Constants shared across the OAuth authorization server.
"""

# Authorization codes are short lived (10 minutes).
AUTH_CODE_EXPIRY_SECONDS = 600

# Access tokens (1 hour) and refresh tokens (30 days, rotated on every use).
ACCESS_TOKEN_EXPIRY_SECONDS = 3600
REFRESH_TOKEN_EXPIRY_DAYS = 30

# RFC 7636 length bounds for code_verifier / code_challenge.
PKCE_MIN_LENGTH = 43
PKCE_MAX_LENGTH = 128

# Dynamic client registration limits.
MAX_REDIRECT_URIS = 10
MAX_CLIENT_NAME_LENGTH = 128

# Token string prefixes.
ACCESS_TOKEN_PREFIX = "rat_"
REFRESH_TOKEN_PREFIX = "rrt_"
CLIENT_ID_PREFIX = "rc_"

SCOPE_DESCRIPTIONS = {
    "mcp": "Read and manage your feeds and articles",
    "saved:write": "Save articles to your library",
}
