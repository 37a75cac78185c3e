"""Logging and metrics for kube-pat."""
