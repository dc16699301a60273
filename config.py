"""
Configuration settings for the e-pharmacy backend
"""
from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "E-Pharmacy API"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    CORS_ALLOWED_ORIGINS: List[str] = ["*"]

    # Database
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: Optional[str] = None

    # Auth
    JWT_SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # Delivery (distance measured from the dispatching pharmacy)
    PHARMACY_NAME: str = "Central Pharmacy"
    PHARMACY_LAT: float = 28.6139
    PHARMACY_LNG: float = 77.2090
    DELIVERY_PER_KM: float = 12
    DELIVERY_MIN_FEE: float = 30
    DELIVERY_FALLBACK_FEE: float = 50  # no coordinates on the address
    MAX_DELIVERY_DISTANCE_KM: float = 50
    FREE_DELIVERY_THRESHOLD: Optional[float] = None
    TAX_RATE: float = 0.05

    # Payments (Cashfree PG)
    CASHFREE_ENV: str = "SANDBOX"
    CASHFREE_APP_ID: Optional[str] = None
    CASHFREE_SECRET_KEY: Optional[str] = None
    CASHFREE_WEBHOOK_SECRET: Optional[str] = None
    CASHFREE_API_VERSION: str = "2022-09-01"
    PAYMENT_SIGNATURE_SECRET: Optional[str] = None
    PAYMENT_TIMEOUT_SECONDS: int = 15

    # Email
    RESEND_API_KEY: Optional[str] = None
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    MAIL_FROM: str = "no-reply@epharmacy.local"

    # SMS
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_FROM: Optional[str] = None

    # File Storage
    AWS_S3_BUCKET: Optional[str] = None
    AWS_REGION: str = "ap-south-1"
    SIGNED_URL_EXPIRY_SECONDS: int = 3600
    UPLOAD_DIR: Path = BASE_DIR / "uploads"
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    MAX_PRESCRIPTION_DOCUMENTS: int = 5

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
