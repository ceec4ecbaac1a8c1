"""Loading readiness."""
