# src/api/dependencies.py
from fastapi import Request

from engine.service import Engine


def get_engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("scan engine is not initialised")
    return engine
