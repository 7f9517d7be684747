import os

from shared.database import get_engine, get_session

DATABASE_URL = os.getenv("BOOKING_DB")

if not DATABASE_URL:
    raise RuntimeError("BOOKING_DB environment variable is not set")

engine = get_engine(DATABASE_URL)

SessionLocal = get_session(engine)
