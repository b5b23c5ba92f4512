#!/usr/bin/env python3
"""
Database management script for deployment.
Run this during the build/deployment pipeline to create the ledger tables.
"""
import sys

from sqlalchemy.exc import SQLAlchemyError

from arena.app import create_app
from arena.models import db


def deploy():
    """Run deployment tasks."""
    print("Creating rating ledger tables...")
    app = create_app()
    with app.app_context():
        try:
            db.create_all()
            print("✓ Ledger tables ready.")
        except SQLAlchemyError as e:
            print(f"Error creating tables: {e}")
            sys.exit(1)


if __name__ == '__main__':
    deploy()
