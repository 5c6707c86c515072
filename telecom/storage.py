import logging
from typing import Generator, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from telecom.config import settings
from telecom.errors import ContactNotFound, DuplicateContact

logger = logging.getLogger(__name__)

_engine_kwargs = {"echo": False}
if settings.DATABASE_URL.startswith("sqlite"):
    # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
    if settings.DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        # In-memory database lives as long as its one shared connection
        _engine_kwargs["poolclass"] = StaticPool

engine = create_engine(settings.DATABASE_URL, **_engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from telecom.models import Contact  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and the contacts table exists.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("contacts"):
            logger.error("Database schema not applied: 'contacts' table not found")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Contact Directory Functions
# =============================================================================

def list_contacts(db: Session, owner: str) -> list:
    """
    List an account's contacts, ordered by name then cell digits.

    Args:
        db: Database session
        owner: Owning account cell digits

    Returns:
        List of Contact rows
    """
    from telecom.models import Contact

    logger.info(f"Listing contacts for owner={owner}")
    contacts = (
        db.query(Contact)
        .filter(Contact.owner_cell_digits == owner)
        .order_by(Contact.contact_name.asc(), Contact.contact_cell_digits.asc())
        .all()
    )
    logger.debug(f"Found {len(contacts)} contacts for owner={owner}")
    return contacts


def add_contact(
    db: Session,
    owner: str,
    counterpart: str,
    display_name: Optional[str] = None
):
    """
    Add a counterparty to an account's contact list.

    Args:
        db: Database session
        owner: Owning account cell digits
        counterpart: Counterparty cell digits
        display_name: Optional name to show for the contact

    Returns:
        The created Contact row

    Raises:
        DuplicateContact: If the owner already lists this counterparty
    """
    from telecom.models import Contact

    logger.info(f"Adding contact: owner={owner}, counterpart={counterpart}")

    contact = Contact(
        owner_cell_digits=owner,
        contact_cell_digits=counterpart,
        contact_name=display_name,
    )
    try:
        db.add(contact)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate contact: owner={owner}, counterpart={counterpart}")
        raise DuplicateContact(counterpart)

    db.refresh(contact)
    logger.info(f"Contact created: id={contact.id}")
    return contact


def get_contact(db: Session, contact_id: int):
    """
    Retrieve a contact by its ID.

    Returns:
        Contact object if found, None otherwise
    """
    from telecom.models import Contact

    return db.query(Contact).filter(Contact.id == contact_id).first()


def find_contact(db: Session, owner: str, counterpart: str):
    """
    Look up the owner's entry for a counterparty.

    Returns:
        Contact object if the owner lists the counterparty, None otherwise
    """
    from telecom.models import Contact

    return (
        db.query(Contact)
        .filter(
            Contact.owner_cell_digits == owner,
            Contact.contact_cell_digits == counterpart,
        )
        .first()
    )


def remove_contact(db: Session, contact_id: int, owner: Optional[str] = None) -> None:
    """
    Delete a contact entry. Messages exchanged with the contact are kept, and
    the counterpart's own entry for this account is untouched.

    Args:
        db: Database session
        contact_id: Contact to delete
        owner: When given, the contact must belong to this account

    Raises:
        ContactNotFound: If no such contact exists (for this owner)
    """
    logger.info(f"Removing contact: id={contact_id}, owner={owner}")

    contact = get_contact(db, contact_id)
    if contact is None or (owner is not None and contact.owner_cell_digits != owner):
        raise ContactNotFound(contact_id)

    db.delete(contact)
    db.commit()
    logger.info(f"Contact removed: id={contact_id}")
