from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from labgrade.core.config import settings

engine = create_engine(settings.DATABASE_URL, future=True, pool_pre_ping=True, echo=settings.DATABASE_ECHO)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
