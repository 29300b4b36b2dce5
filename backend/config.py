from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True
    BASE_URL: str = "http://localhost:8000"

    # MongoDB
    MONGO_URL: str = "mongodb://localhost:27017"
    DB_NAME: str = "dropee"

    # JWT (issued by the identity service, only verified here)
    JWT_SECRET: str = "changeme_minimum_32_chars_here_please"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 120

    # ETA
    AVERAGE_SPEED_KMH:         float = 25.0
    ETA_BUFFER_PENDING:        int   = 15
    ETA_BUFFER_AGENT_ASSIGNED: int   = 10
    ETA_BUFFER_PICKED_UP:      int   = 5
    ETA_BUFFER_IN_TRANSIT:     int   = 0

    # Pricing defaults (INR) used when no delivery_pricing row exists
    BASE_PRICE:         float = 30.0
    PRICE_PER_KM:       float = 10.0
    PRICE_PER_KG:       float = 5.0    # above FREE_WEIGHT_KG
    FREE_WEIGHT_KG:     float = 2.0
    FRAGILE_MULTIPLIER: float = 1.5
    RAIN_MULTIPLIER:    float = 1.3
    URGENT_MULTIPLIER:  float = 1.5
    MIN_FEE:            float = 30.0
    MAX_FEE:            float = 500.0

    # Proof of delivery storage
    PROOF_UPLOAD_DIR:       str = "uploads/delivery-proofs"
    MEDIA_BASE_URL:         str = "http://localhost:8000/media/delivery-proofs"
    MAX_PROOF_IMAGE_BYTES:  int = 10 * 1024 * 1024

    # Live tracking feed
    FEED_QUEUE_SIZE: int = 100

    # Idle sweep of unassigned orders, 0 = disabled
    PENDING_ORDER_TIMEOUT_MINUTES: int = 0
    SWEEP_INTERVAL_SECONDS:        int = 120

    model_config = SettingsConfigDict(
        env_file=[".env", "../.env"],
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
