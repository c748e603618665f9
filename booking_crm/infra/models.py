"""Registry of every ORM module.

Importing this module loads all mapped classes so string-based foreign keys
resolve when an individual model module is imported in isolation.
"""

from booking_crm.domain.settings_store import db_models as settings_store_db_models  # noqa: F401
from booking_crm.domain.contacts import db_models as contacts_db_models  # noqa: F401
from booking_crm.domain.catalog import db_models as catalog_db_models  # noqa: F401
from booking_crm.domain.teams import db_models as teams_db_models  # noqa: F401
from booking_crm.domain.business_hours import db_models as business_hours_db_models  # noqa: F401
from booking_crm.domain.bookings import db_models as bookings_db_models  # noqa: F401
from booking_crm.domain.payments import db_models as payments_db_models  # noqa: F401
from booking_crm.domain.notifications import db_models as notifications_db_models  # noqa: F401
from booking_crm.domain.waitlist import db_models as waitlist_db_models  # noqa: F401
