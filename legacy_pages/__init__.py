"""
Legacy pages service.

This package provides a FastAPI application that lets a signed-in user
create, edit, view and delete a single legacy page about an honouree,
backed by a relational database and S3-compatible object storage.
"""
