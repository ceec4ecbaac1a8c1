"""
Session and identity orchestration core.

Decides which authentication level the user is at, whether the UI may
render, which profile or account is active, and when the app must lock.
"""
