"""
KPI Dashboard Backend
Database models package.

The shared Flask-SQLAlchemy instance lives here so every model module can
``from kpi_dashboard.models import db`` without importing the app factory.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
