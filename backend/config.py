import os
from dotenv import load_dotenv
load_dotenv()

class Config:
    # Database & JWT
    MONGO_URI = os.environ.get("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB_NAME = os.environ.get("MONGO_DB_NAME", "ballot_db")
    MONGO_TLS = os.environ.get("MONGO_TLS", "false").lower() in ("1", "true", "yes")
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "change-me-to-a-strong-secret")
    JWT_ACCESS_TOKEN_EXPIRES = int(os.environ.get("JWT_EXPIRES_SECONDS", 3600))

    # Election private keys are sealed with this before they are stored
    KEY_PASSPHRASE = os.environ.get("KEY_PASSPHRASE", "change-me")

    # Tally: threads used to decrypt ballots at close (1 = sequential)
    TALLY_WORKERS = int(os.environ.get("TALLY_WORKERS", "1"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")
