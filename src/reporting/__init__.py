"""Run reports for apply and destroy."""
