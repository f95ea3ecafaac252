"""
Tourlink Marketplace
SQLAlchemy extension instance shared by every model module.

Usage:
    from tourlink.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
