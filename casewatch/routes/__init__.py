# ==== ROUTES PACKAGE ==== #

"""
Routes package for API endpoints.
"""
