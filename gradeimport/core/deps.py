from fastapi import Depends
from sqlalchemy.orm import Session

from gradeimport.core.config import UPLOAD_DIR
from gradeimport.db.session import SessionLocal
from gradeimport.services.blobs import FileBlobStore
from gradeimport.services.roster import SqlRoster


# every request that needs DB will get a fresh session, and it will always close.
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_blob_store() -> FileBlobStore:
    return FileBlobStore(UPLOAD_DIR)


# roster/evaluation collaborator; swap this dependency to read from an upstream service
def get_roster(db: Session = Depends(get_db)) -> SqlRoster:
    return SqlRoster(db)
