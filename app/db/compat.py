"""
פונקציות SQL תואמות דיאלקט - PostgreSQL + SQLite.

דליים של זמן לגרפי מגמות בדשבורד: PostgreSQL בפרודקשן, SQLite בבדיקות.
"""
from sqlalchemy import String
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import GenericFunction


class day_bucket(GenericFunction):
    """תאריך (YYYY-MM-DD) מעמודת datetime"""
    type = String()
    name = "day_bucket"
    inherit_cache = True


@compiles(day_bucket, "postgresql")
def _pg_day_bucket(element, compiler, **kw):
    col = compiler.process(element.clauses.clauses[0], **kw)
    return f"to_char({col}, 'YYYY-MM-DD')"


@compiles(day_bucket, "sqlite")
def _sqlite_day_bucket(element, compiler, **kw):
    col = compiler.process(element.clauses.clauses[0], **kw)
    return f"strftime('%Y-%m-%d', {col})"
