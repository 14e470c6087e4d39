"""
Lion Reader API: OAuth 2.1 authorization server and its supporting pieces.
"""
