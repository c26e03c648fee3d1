from fastapi import APIRouter
from .profiles import router as profiles_router
from .conversations import router as conversations_router
from .messages import router as messages_router
from .stories import router as stories_router
from .ws import router as ws_router

router = APIRouter()
router.include_router(profiles_router, prefix='/profiles', tags=['profiles'])
router.include_router(conversations_router, prefix='/conversations', tags=['conversations'])
router.include_router(messages_router, prefix='/messages', tags=['messages'])
router.include_router(stories_router, prefix='/stories', tags=['stories'])
router.include_router(ws_router, prefix='/ws', tags=['ws'])
