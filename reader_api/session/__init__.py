"""
Browser session lookup, as provided by the login system.
"""
