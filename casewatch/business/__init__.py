# ==== BUSINESS LOGIC PACKAGE ==== #

"""
Business logic package for case lifecycle vocabulary, errors and policies.
"""
