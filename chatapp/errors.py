"""
Error taxonomy shared by the store, the HTTP routes and the client.

Every store/storage failure is converted into one of these at the operation
boundary; routes never see raw driver exceptions.
"""
import asyncio
import functools
import logging
from typing import Optional

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError

logger = logging.getLogger(__name__)


class ChatError(Exception):
    status_code = 500
    kind = 'error'

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class Unauthenticated(ChatError):
    status_code = 401
    kind = 'unauthenticated'


class NotFound(ChatError):
    status_code = 404
    kind = 'not_found'


class Conflict(ChatError):
    status_code = 409
    kind = 'conflict'


class TransientStorageError(ChatError):
    status_code = 503
    kind = 'transient_storage_error'


class ValidationError(ChatError):
    status_code = 400
    kind = 'validation_error'


class CooldownActive(ValidationError):
    status_code = 429
    kind = 'cooldown_active'

    def __init__(self, message: str = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimited(ChatError):
    """Too many requests of one kind inside the rate-limit window; retry later"""
    status_code = 429
    kind = 'rate_limited'

    def __init__(self, message: str = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (Unauthenticated, NotFound, Conflict, TransientStorageError, ValidationError, CooldownActive,
                RateLimited)
}


def translate_store_errors(func):
    """Convert SQLAlchemy/driver failures raised by an operation into ChatError kinds"""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except ChatError:
            raise
        except IntegrityError as e:
            logger.info(f"{func.__name__}: integrity violation: {e.orig}")
            raise Conflict(f"{func.__name__} conflicts with existing data") from e
        except (OperationalError, DBAPIError, asyncio.TimeoutError, ConnectionError) as e:
            logger.warning(f"{func.__name__}: storage unavailable: {e}")
            raise TransientStorageError(f"{func.__name__} failed, please retry") from e
        except SQLAlchemyError as e:
            logger.error(f"{func.__name__}: storage error: {e}")
            raise TransientStorageError(f"{func.__name__} failed, please retry") from e
    return wrapper
