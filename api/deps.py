"""
API dependencies
"""
from fastapi import Request

from core.engine import WageringEngine


def get_engine(request: Request) -> WageringEngine:
    """FastAPI dependency：取得 lifespan 建立的唯一 WageringEngine"""
    return request.app.state.engine
