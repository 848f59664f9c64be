import importlib
import pkgutil
from typing import List

from fastapi import FastAPI, APIRouter

from foldly.logger import get_logger

logger = get_logger(__name__)


def register_routers(app: FastAPI) -> List[str]:
    """Mount the ``router`` of every module in this package, in name order."""
    package = importlib.import_module(__name__)
    mounted = []

    for module_info in sorted(pkgutil.iter_modules(package.__path__), key=lambda m: m.name):
        if module_info.ispkg:
            continue

        module = importlib.import_module(f"{__name__}.{module_info.name}")
        router = getattr(module, "router", None)
        if not isinstance(router, APIRouter):
            continue

        app.include_router(router)
        mounted.append(router.prefix or module_info.name)

    logger.debug("Mounted routers: %s", ", ".join(mounted))
    return mounted
