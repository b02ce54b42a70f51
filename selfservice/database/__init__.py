from . import models
from .database import Base, create_session_factory

__all__ = ["models", "Base", "create_session_factory"]
