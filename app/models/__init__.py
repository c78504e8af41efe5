from app.models.app import App  # noqa: F401
from app.models.asset import Asset  # noqa: F401
from app.models.bundle import Bundle  # noqa: F401
from app.models.manifest import Manifest  # noqa: F401
from app.models.update import DEFAULT_PLATFORMS, Channel, Platform, Update  # noqa: F401
