"""
Runtime configuration

Values come from environment variables, optionally loaded from a .env file.
"""

import os

from dotenv import load_dotenv

# Load environment variables from .env file (if present)
load_dotenv()

# Primary MongoDB; when either is missing the embedded Mongita client is used
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
FALLBACK_DATABASE_NAME = os.getenv("FALLBACK_DATABASE_NAME", "photo_guess")
MONGITA_MODE = os.getenv("MONGITA_MODE", "disk")  # disk | memory

# Device-local resume checkpoints
PROGRESS_FILE = os.getenv("PROGRESS_FILE", "progress.json")

LEADERBOARD_SIZE = int(os.getenv("LEADERBOARD_SIZE", 10))
MAX_COLLECTION_ITEMS = int(os.getenv("MAX_COLLECTION_ITEMS", 10))
MAX_COLLECTION_NAME_LEN = int(os.getenv("MAX_COLLECTION_NAME_LEN", 10))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))
