"""Application-wide Flask extensions."""

from flask_sqlalchemy import SQLAlchemy


# A single SQLAlchemy handle shared across the application. It stores Flask
# sessions and assistant conversations; everything else lives in Supabase.
db = SQLAlchemy()
