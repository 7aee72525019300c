from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from netinventory.core.config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # Scan workers use their own sessions from background threads
    connect_args["check_same_thread"] = False

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
