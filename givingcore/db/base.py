"""Import every model so ``Base.metadata`` is complete (used by tests and migrations)."""
from givingcore.db.base_class import Base  # noqa: F401
from givingcore.models import models, payment_models  # noqa: F401
