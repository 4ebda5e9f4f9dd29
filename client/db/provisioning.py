"""Schema provisioning for the emulated server.

Against SQL Server the Customer table, its column keys and the stored
procedures are provisioned ahead of time.  The emulated server creates the
table itself and seeds it through an encryption-enabled connection, so the
stored ciphertext is exactly what a client would have written.
"""

import logging

from sqlalchemy import func, select

from config import Settings, get_settings
from db.commands import Command, Parameter, SqlType
from db.emulated import EmulatedConnection, EmulatedServer
from models.database import Base, Customer
from models.schemas import ConnectionConfig

logger = logging.getLogger(__name__)

# Two SSNs differ only in case so equality lookups show case sensitivity.
SEED_CUSTOMERS = (
    ("John Smith", "123-45-6789", "New York"),
    ("Doug Nichols", "n/a", "Boston"),
    ("Joe Anonymous", "n/a", "Chicago"),
    ("Jane Doe", "N/A", "Seattle"),
)


def seed_customers(server: EmulatedServer, customers=SEED_CUSTOMERS) -> int:
    config = ConnectionConfig(
        name="provisioning",
        server="emulated",
        database=server.database_name,
        column_encryption=True,
    )
    inserted = 0
    with EmulatedConnection(server, config) as conn:
        for name, ssn, city in customers:
            command = Command("INSERT INTO Customer VALUES(@Name, @SSN, @City)")
            command.add(Parameter("@Name", SqlType.VARCHAR, 20, name))
            command.add(Parameter("@SSN", SqlType.VARCHAR, 20, ssn))
            command.add(Parameter("@City", SqlType.VARCHAR, 20, city))
            inserted += conn.execute_non_query(command)
    return inserted


def provision(server: EmulatedServer, *, seed: bool = True) -> None:
    """Create the schema and optionally seed the sample customers."""
    Base.metadata.create_all(server.engine)
    with server.engine.connect() as conn:
        existing = conn.execute(select(func.count()).select_from(Customer.__table__)).scalar()
    if seed and existing:
        logger.info("Emulated database %s already holds %d customer(s); not seeding", server.database_name, existing)
    elif seed:
        count = seed_customers(server)
        logger.info("Seeded %d customer(s) into emulated database %s", count, server.database_name)


def create_emulated_server(settings: Settings | None = None) -> EmulatedServer:
    """Build an emulated server from settings and provision its schema."""
    settings = settings or get_settings()
    server = EmulatedServer.from_settings(settings)
    provision(server, seed=settings.seed_emulated_database)
    return server
