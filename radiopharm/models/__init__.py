"""
Radiopharmaceutical Fulfillment Core
SQLAlchemy extension instance shared by every model module.

Usage:
    from radiopharm.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
