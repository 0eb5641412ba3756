from fastapi import Request

from taskworker.stub.service import InMemoryEngine


def get_engine(request: Request) -> InMemoryEngine:
    """FastAPI Dependency for accessing the engine of the app serving this request."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("In-memory engine is not initialized.")
    return engine
