"""Protocol session factory loading."""

import importlib
import logging

from app.infrastructure.protocol.base import ProtocolSessionFactory

logger = logging.getLogger(__name__)


def load_session_factory(path: str) -> ProtocolSessionFactory:
    """Load a session factory from a ``package.module:attribute`` path.

    The attribute may be a factory instance or a class taking no arguments.

    Raises:
        ValueError: If the path is malformed or does not name a factory
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Invalid protocol factory path: {path!r}")

    module = importlib.import_module(module_name)
    target = getattr(module, attribute)
    factory = target() if isinstance(target, type) else target
    if not isinstance(factory, ProtocolSessionFactory):
        raise ValueError(f"{path!r} is not a ProtocolSessionFactory")

    logger.info(f"Loaded protocol session factory {path}")
    return factory
