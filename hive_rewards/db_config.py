# hive_rewards/db_config.py
"""Database configuration and credentials management"""
from dataclasses import dataclass
from urllib.parse import quote_plus, urlparse

from hive_rewards.config import Settings

SUPPORTED_SCHEMES = ('postgresql', 'postgresql+psycopg2', 'postgresql+psycopg', 'sqlite')


@dataclass
class DatabaseCredentials:
    """Database credentials container with validation"""
    host: str
    port: str
    name: str
    user: str
    password: str
    ssl_mode: str = 'prefer'

    def to_connection_string(self) -> str:
        """Generate database connection string with proper escaping"""
        return (
            f"postgresql://{quote_plus(self.user)}:{quote_plus(self.password)}@{self.host}:{self.port}/"
            f"{self.name}?sslmode={self.ssl_mode}"
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> 'DatabaseCredentials':
        """Create credentials from the DB_* settings"""
        if not settings.DB_PASSWORD:
            raise ValueError("DB_PASSWORD setting is required when DATABASE_URL is not set")
        return cls(
            host=settings.DB_HOST,
            port=settings.DB_PORT,
            name=settings.DB_NAME,
            user=settings.DB_USER,
            password=settings.DB_PASSWORD,
            ssl_mode=settings.DB_SSL_MODE
        )

    @staticmethod
    def validate_url(url: str) -> bool:
        """Check that a database URL uses a supported scheme"""
        try:
            parsed = urlparse(url)
        except ValueError:
            return False
        return parsed.scheme in SUPPORTED_SCHEMES


class DatabaseManager:
    """Resolves the connection string for the configured database"""

    @staticmethod
    def get_connection_string(settings: Settings) -> str:
        """
        Resolve database connection string from settings

        Args:
            settings: Application settings

        Returns:
            Complete database connection string

        Raises:
            ValueError: If neither DATABASE_URL nor DB_PASSWORD is usable
        """
        if settings.DATABASE_URL:
            if not DatabaseCredentials.validate_url(settings.DATABASE_URL):
                raise ValueError("DATABASE_URL uses an unsupported scheme")
            return settings.DATABASE_URL

        return DatabaseCredentials.from_settings(settings).to_connection_string()
