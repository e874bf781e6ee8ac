# util/db.py
import psycopg
from psycopg.rows import dict_row

from util.config import DATABASE_URL

def db():
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL not set")
    return psycopg.connect(DATABASE_URL, row_factory=dict_row)
