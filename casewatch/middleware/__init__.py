"""HTTP middleware for request correlation and company scoping."""
