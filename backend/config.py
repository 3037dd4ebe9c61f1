import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key')
    DEBUG = os.getenv('FLASK_DEBUG', 'True').lower() == 'true'
    JSON_AS_ASCII = False

    # Comma-separated list of allowed CORS origins for /api/*
    CORS_ORIGINS = [
        origin.strip()
        for origin in os.getenv('CORS_ORIGINS', '*').split(',')
        if origin.strip()
    ]

    # Start the history bootstrap + 12h refresh loop when the server starts.
    # Off by default so tests and one-off CLI runs never hit the network.
    SYNC_AUTOSTART = os.getenv('MF_SYNC_AUTOSTART', 'false').lower() in ('true', '1', 'yes', 'on')
