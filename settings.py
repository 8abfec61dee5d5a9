import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "chat")

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

# Seconds without a renewed typing-start before the indicator clears itself
TYPING_QUIET_PERIOD = float(os.getenv("TYPING_QUIET_PERIOD", "3.0"))

MEDIA_ROOT = os.getenv("MEDIA_ROOT", "uploads")
MEDIA_URL = os.getenv("MEDIA_URL", "/media")
CLOUDINARY_URL = os.getenv("CLOUDINARY_URL")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
