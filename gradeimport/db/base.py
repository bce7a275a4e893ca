# Base with every model registered, for create_all and alembic autogenerate
from gradeimport.db.base_class import Base  # noqa: F401
from gradeimport.models import draft, enrollment, evaluation, grade, student  # noqa: F401
