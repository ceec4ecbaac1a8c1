"""
App lock - background/idle timing and the lock service.
"""
