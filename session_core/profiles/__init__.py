"""
Profiles - warm switching between profiles of the same user.
"""
