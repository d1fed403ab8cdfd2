from fastapi import APIRouter
from . import assistant
from . import collection
from . import dev
from . import endpoint
from . import watchlist

router = APIRouter()
router.include_router(endpoint.router)
router.include_router(collection.router, prefix="/collection", tags=["Collection"])
router.include_router(watchlist.router, prefix="/watchlist", tags=["Watchlist"])
router.include_router(assistant.router, prefix="/assistant", tags=["Assistant"])
router.include_router(dev.router, prefix="/dev", tags=["Dev"])
