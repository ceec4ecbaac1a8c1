"""
Authentication - state machine, token helpers, services and pipelines.
"""
