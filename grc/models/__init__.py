"""
GRC Platform
SQLAlchemy extension instance shared by every model module.

Usage:
    from grc.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
