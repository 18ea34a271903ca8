"""Logging, metrics and tracing for casewatch."""
