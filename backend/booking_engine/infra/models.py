"""Central registry for SQLAlchemy models with string-based relationships.

Importing this module loads all ORM classes that may be referenced by string to
avoid mapper configuration errors when individual models are imported in
isolation.
"""

from booking_engine.domain.units import db_models as unit_db_models  # noqa: F401
from booking_engine.domain.availability import db_models as availability_db_models  # noqa: F401
from booking_engine.domain.bookings import db_models as booking_db_models  # noqa: F401
from booking_engine.domain.refunds import db_models as refund_db_models  # noqa: F401
from booking_engine.domain.outbox import db_models as outbox_db_models  # noqa: F401
