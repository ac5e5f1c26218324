"""
Core Models Module

Database engine configuration. Domain models live in their own modules and
are imported here so they register with SQLModel metadata before the engine
creates tables.
"""

from sqlalchemy import create_engine
from sqlmodel import SQLModel

# Import all domain models to ensure they're registered with SQLModel metadata
from .supplier_models import *
from .supplier_credentials import *
from .two_factor_models import *
from .scraping_log_models import *
from .task_models import *

# Create an engine for SQLite
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

sqlite_url = os.getenv("DATABASE_URL", "sqlite:///kitchencart.db")

engine = create_engine(
    sqlite_url,
    echo=False,
    connect_args={"check_same_thread": False},
)


# Create tables if they don't exist
def create_db_and_tables():
    SQLModel.metadata.create_all(engine)
