from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ci_rag.config import get_settings

DATABASE_URL = get_settings().database_url

# Connection pool (defaults: pool_size=5, max_overflow=10, recycle=-1, pre_ping=False)
engine = create_engine(
    DATABASE_URL,
    pool_size=10,
    max_overflow=20,
    pool_recycle=3600,      # Recycle connections after 1 hour
    pool_pre_ping=True      # Test connection health before use
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models
Base = declarative_base()
