"""Older releases marked archived items 'uploaded'; 'encoded' is the only archived status now.

One-way: afterwards the rewritten rows cannot be told apart from real 'encoded' ones.
"""
from sqlalchemy import text


def upgrade(connection):
    connection.execute(text(
        "UPDATE queue SET status = 'encoded' WHERE status = 'uploaded'"
    ))
