# ==== STORAGE PACKAGE ==== #

"""
Storage package: async SQLAlchemy engine, sessions and ORM models.
"""
