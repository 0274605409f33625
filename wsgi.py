#!/usr/bin/env python3
"""
Silo Monitor Production Startup Script
Initializes database and configuration, then exposes the app for gunicorn.
"""
import logging
import os

from app import app, init_db, seed_demo_data

logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO'))
app.logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO'))

# Initialize database and load the thresholds document
init_db()

# Optionally seed demo data (set SEED_DEMO=true in environment)
if os.environ.get('SEED_DEMO', '').lower() == 'true':
    print("Seeding demo data...")
    seed_demo_data()

print("Silo Monitor startup complete. Ready for gunicorn (wsgi:app).")
