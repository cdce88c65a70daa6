from webhook_relay.core.database import Base


class BaseModel(Base):
    """Base model class for relay tables."""

    __abstract__ = True
