import os

from .base import *  # noqa

DEBUG = False

# In-memory SQLite unless DB_ENGINE=postgres is set (the row-locking
# concurrency tests only run there). base may already have been imported via
# config/settings/__init__.py, so the database is chosen here, not there.
TEST_DB_ENGINE = os.getenv("DB_ENGINE", "sqlite").lower()

if TEST_DB_ENGINE != "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": ":memory:",
        }
    }

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

LOGGING["loggers"]["clinic_core"]["level"] = os.getenv("LOG_LEVEL", "WARNING").upper()
# let pytest's caplog see service logs
LOGGING["loggers"]["clinic_core"]["propagate"] = True
