from .payments import router as payments_router
from .tracks import router as tracks_router
from .modules import router as modules_router
from .usage import router as usage_router
