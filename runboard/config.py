import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Runboard configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///runboard.db')

    # Logging
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')

    # Read bounds (correctness of ranks/totals is only guaranteed up to these)
    RUN_FETCH_LIMIT = int(os.getenv('RUN_FETCH_LIMIT', 1000))             # Runs per group key
    PLAYER_RUN_FETCH_LIMIT = int(os.getenv('PLAYER_RUN_FETCH_LIMIT', 500)) # Runs per player query
    LINK_SCAN_LIMIT = int(os.getenv('LINK_SCAN_LIMIT', 2000))             # Runs scanned by auto-link
    BACKFILL_FETCH_LIMIT = int(os.getenv('BACKFILL_FETCH_LIMIT', 10000))  # Runs read by a backfill
    LEADERBOARD_LIMIT = int(os.getenv('LEADERBOARD_LIMIT', 100))          # Players on the points leaderboard

    # Store write settings
    BATCH_WRITE_LIMIT = int(os.getenv('BATCH_WRITE_LIMIT', 500))

    # Backfill debounce lock (optional Redis)
    REDIS_URL = os.getenv('REDIS_URL')
    BACKFILL_LOCK_SECONDS = int(os.getenv('BACKFILL_LOCK_SECONDS', 300))

    @classmethod
    def get_fetch_limits(cls):
        """Get all read bounds as a dict (for logging and admin output)"""
        return {
            'run_fetch_limit': cls.RUN_FETCH_LIMIT,
            'player_run_fetch_limit': cls.PLAYER_RUN_FETCH_LIMIT,
            'link_scan_limit': cls.LINK_SCAN_LIMIT,
            'backfill_fetch_limit': cls.BACKFILL_FETCH_LIMIT,
            'leaderboard_limit': cls.LEADERBOARD_LIMIT,
        }

    @classmethod
    def validate(cls):
        """Validate that required configuration is present"""
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        for name, value in cls.get_fetch_limits().items():
            if value <= 0:
                raise ValueError(f"{name.upper()} must be a positive integer")
        if cls.BATCH_WRITE_LIMIT <= 0:
            raise ValueError("BATCH_WRITE_LIMIT must be a positive integer")
