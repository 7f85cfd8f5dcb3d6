from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from blocker.config import DATABASE_URL

# sqlite needs check_same_thread off: the sweeper task and request handlers
# share the engine.
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
	pass
