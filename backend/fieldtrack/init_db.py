from fieldtrack.models_sqlalchemy import Base, engine
from fieldtrack.models_sqlalchemy.models import (  # noqa: F401 - registers tables
    User, Customer, Jobsite, Lead, Estimate, EstimateItem,
    Job, Invoice, Payment, Reminder
)
from fieldtrack.utils.logger import logger


def init_db():
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully!")


if __name__ == "__main__":
    init_db()
