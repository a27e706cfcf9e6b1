from fastapi import APIRouter

from .endpoints import inventory, rewards

router = APIRouter()
router.include_router(rewards.router)
router.include_router(inventory.router)
