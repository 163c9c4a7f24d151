from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True

    # MongoDB
    MONGO_URL: str = "mongodb://localhost:27017"
    DB_NAME: str = "Badr"
    MONGO_TRANSACTIONS: bool = False   # True uniquement sur un replica set
    MAX_WRITE_RETRIES: int = 5

    # JWT
    JWT_SECRET: str = "changeme_minimum_32_chars_here_please"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 120

    # Routage (Google Distance Matrix), sans clé : haversine uniquement
    GOOGLE_MAPS_API_KEY: Optional[str] = None
    ROUTING_TIMEOUT_S:   float = 5.0
    FALLBACK_SPEED_MPS:  float = 15.0    # vitesse supposée si l'API est indisponible

    # Commission et attente
    SYSTEM_COMMISSION_RATE: float = 0.10   # 10 % plateforme
    WAITING_TIMEOUT_MS:     int   = 300_000  # 5 min de grâce au pickup / dropoff
    WAITING_SAFETY_FACTOR:  float = 0.5    # marge d'attente réservée : 0.5 × waiting_rate

    # Plancher wallet livreur : en dessous, seules les commandes wallet sont proposées
    CASH_BLOCK: float = -100.0

    # Désignation du livreur principal
    PRIMARY_RATING_WEIGHT:      float = 0.3
    PRIMARY_ORDER_COUNT_WEIGHT: float = 0.7

    # Suivi GPS : on n'enregistre un point que si > 50 m ou > 60 s
    LOCATION_MIN_DISTANCE_M:  float = 50.0
    LOCATION_MIN_INTERVAL_MS: int   = 60_000

    # Firebase Cloud Messaging
    FIREBASE_CREDENTIALS: Optional[str] = None   # chemin du compte de service

    BID_RATE_LIMIT: str = "30/minute"

    model_config = SettingsConfigDict(
        env_file=[".env", "../.env"],  # cherche dans backend/ puis dans la racine
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
