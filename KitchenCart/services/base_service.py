"""
Base service abstraction for database session management and error handling.

Services open sessions here and hand them to repositories; repositories never
open their own.
"""

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Optional, TypeVar, Generic
from abc import ABC

from sqlmodel import Session
from pydantic import BaseModel

from KitchenCart.models.models import engine
from KitchenCart.exceptions import KitchenCartException, log_exception

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ServiceResponse(BaseModel, Generic[T]):
    """Standardized response format for service operations."""
    success: bool
    message: str
    data: Optional[T] = None
    errors: Optional[list[str]] = None

    @classmethod
    def success_response(cls, message: str, data: T = None) -> 'ServiceResponse[T]':
        return cls(success=True, message=message, data=data)

    @classmethod
    def error_response(cls, message: str, errors: list[str] = None) -> 'ServiceResponse[T]':
        return cls(success=False, message=message, errors=errors or [])


class BaseService(ABC):
    """
    Base service class providing session management and error handling.

    Usage:
        class TwoFactorService(BaseService):
            async def cancel(self, token):
                async with self.get_async_session() as session:
                    ...
    """

    def __init__(self, engine_override=None):
        """
        Args:
            engine_override: Optional engine to use instead of global engine (for testing)
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.engine = engine_override if engine_override is not None else engine

    @contextmanager
    def get_session(self):
        """
        Session that commits on success, rolls back on error and always closes.
        """
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            self.logger.error(f"Database session rolled back due to error: {e}")
            raise
        finally:
            session.close()

    @asynccontextmanager
    async def get_async_session(self):
        """Same contract as get_session() for use inside coroutines."""
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            self.logger.error(f"Database session rolled back due to error: {e}")
            raise
        finally:
            session.close()

    def success_response(self, message: str, data: Any = None) -> ServiceResponse:
        self.logger.info(f"Service operation successful: {message}")
        return ServiceResponse.success_response(message, data)

    def error_response(self, message: str, errors: list[str] = None) -> ServiceResponse:
        self.logger.error(f"Service operation failed: {message}")
        return ServiceResponse.error_response(message, errors)

    def handle_exception(self, e: Exception, operation: str) -> ServiceResponse:
        log_exception(e, context=f"{self.__class__.__name__}.{operation}")

        if isinstance(e, KitchenCartException):
            return self.error_response(e.message, [str(e)])
        return self.error_response(f"An unexpected error occurred during {operation}", [str(e)])
