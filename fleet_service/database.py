from sqlalchemy.orm import declarative_base, sessionmaker

from common.database import create_service_engine

engine = create_service_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Yield a SQLAlchemy database session for the Fleet service.

    This is used as a FastAPI dependency to provide a scoped
    session per request and ensure it is properly closed.

    Yields
    ------
    Session
        Active SQLAlchemy session bound to the configured engine.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
