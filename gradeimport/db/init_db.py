from gradeimport.db.base import Base
from gradeimport.db.session import engine


def init_db() -> None:
    Base.metadata.create_all(bind=engine)
