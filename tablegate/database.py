# ABOUTME: Database connection management
# ABOUTME: Provides the SQLAlchemy engine shared by the request pipeline

from sqlalchemy import create_engine
from tablegate.config import get_settings

settings = get_settings()

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
)
