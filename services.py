import math
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, NamedTuple, Sequence, Tuple

import asyncpg
import bcrypt
import jwt
from fastapi.concurrency import run_in_threadpool

from config import (
    DEFAULT_PAGE,
    DEFAULT_PAGE_LIMIT,
    JWT_SECRET_KEY,
    JWT_ALGORITHM,
    JWT_EXPIRATION_MINUTES,
)
from db import (
    Database,
    info_logger,
    error_logger,
    app_info_logger,
    app_error_logger,
    insert_user,
    insert_complaint,
    insert_media,
    fetch_complaint_page,
    count_complaints,
    fetch_complaint,
    fetch_media_for_complaints,
    fetch_media_keys,
    delete_media_rows,
    delete_complaint_row,
    insert_account,
    fetch_account_by_email,
)
from errors import (
    ComplaintError,
    NotFoundError,
    ConflictError,
    AuthenticationError,
    StoreFailure,
)
from schemas import (
    ComplaintMetadata,
    ComplaintResponse,
    MediaResponse,
    PaginationResponse,
    ComplaintPage,
    RegisterRequest,
    AccountResponse,
    LoginResponse,
)
from storage import BlobStore

logger = logging.getLogger(__name__)

# Largest value a BIGSERIAL id can take
MAX_ID = 2 ** 63 - 1


class IncomingFile(NamedTuple):
    """One uploaded file: the form field it arrived under, its client-side
    name and an object exposing an async ``read(size)``."""

    field_name: str
    filename: Optional[str]
    content: Any


@dataclass
class DeletionResult:
    complaint_id: int
    media_removed: int
    blobs_removed: int
    failed_blobs: List[str] = field(default_factory=list)


def parse_positive_int(value: Any, default: int, maximum: int = MAX_ID) -> int:
    """Coerce untrusted input to an int in [1, maximum], falling back to `default`"""
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if 1 <= number <= maximum else default


def coerce_page_params(page: Any = None, limit: Any = None) -> Tuple[int, int]:
    return parse_positive_int(page, DEFAULT_PAGE), parse_positive_int(limit, DEFAULT_PAGE_LIMIT)


def parse_complaint_id(value: Any) -> int:
    """Return the complaint id named by `value`; ids that cannot exist are NotFound"""
    try:
        complaint_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise NotFoundError("Complaint not found")
    if complaint_id < 1 or complaint_id > MAX_ID:
        raise NotFoundError("Complaint not found")
    return complaint_id


def _to_complaint(row: Dict[str, Any], media: List[Dict[str, Any]]) -> ComplaintResponse:
    return ComplaintResponse(**row, media=[MediaResponse(**item) for item in media])


class IntakeService:
    """Stores a submission (metadata plus any number of files) as one unit"""

    def __init__(self, database: Database, blobs: BlobStore):
        self.database = database
        self.blobs = blobs

    async def submit(self, metadata: ComplaintMetadata, files: Sequence[IncomingFile] = ()) -> int:
        """Persist the files, then the user, complaint and media rows in one transaction.

        Returns the new complaint id once the transaction has committed.
        Files are written before the transaction opens; if storing any of
        them fails, the files already written for this request are removed
        and nothing reaches the database. Files are left in place when the
        transaction itself fails.
        """
        app_info_logger.info(
            f"APP_INFO: Complaint submission started - Category: {metadata.category}, Files: {len(files)}"
        )

        stored: List[Tuple[str, str]] = []
        try:
            for incoming in files:
                key = await self.blobs.save(incoming.content, incoming.filename)
                stored.append((key, incoming.field_name))
        except Exception as e:
            await self._discard(stored)
            app_error_logger.error(f"APP_ERROR: File upload failed - Error: {str(e)}")
            if isinstance(e, ComplaintError):
                raise
            raise StoreFailure("Failed to store uploaded file", cause=e) from e

        try:
            async with self.database.transaction() as connection:
                user_id = await insert_user(
                    connection,
                    metadata.full_name,
                    metadata.age,
                    metadata.voter_number,
                    metadata.gender,
                )
                complaint_id = await insert_complaint(connection, user_id, metadata.category)
                for key, field_name in stored:
                    await insert_media(connection, complaint_id, key, field_name)
        except Exception as e:
            logger.error(f"❌ Complaint submission failed: {e}")
            error_logger.error(f"SYSTEM_ERROR: Complaint transaction rolled back - Stored blobs: {len(stored)}, Error: {str(e)}")
            raise StoreFailure("Failed to submit complaint", cause=e) from e

        logger.info(f"✅ Complaint submitted successfully: {complaint_id}")
        info_logger.info(f"SYSTEM_INFO: Complaint created - ID: {complaint_id}, UserID: {user_id}, Media: {len(stored)}")
        return complaint_id

    async def _discard(self, stored: List[Tuple[str, str]]):
        for key, _ in stored:
            try:
                await self.blobs.delete(key)
            except Exception as e:
                error_logger.error(f"SYSTEM_ERROR: Failed to discard blob after upload error - Key: {key}, Error: {str(e)}")


class QueryService:
    def __init__(self, database: Database):
        self.database = database

    async def list_complaints(self, page: Any = None, limit: Any = None) -> ComplaintPage:
        """Newest complaints first, one page at a time, each with its media.

        The page rows and their media come from two separate reads; a
        complaint deleted in between is returned with an empty media list.
        """
        page, limit = coerce_page_params(page, limit)
        offset = (page - 1) * limit
        app_info_logger.info(f"APP_INFO: Fetching complaints - Page: {page}, Limit: {limit}, Offset: {offset}")

        try:
            async with self.database.connection() as connection:
                # An offset past the last possible id cannot match any row
                rows = await fetch_complaint_page(connection, limit, offset) if offset <= MAX_ID else []
                total = await count_complaints(connection)
                media = await fetch_media_for_complaints(connection, [row['id'] for row in rows])
        except Exception as e:
            app_error_logger.error(f"APP_ERROR: Failed to fetch complaints - Page: {page}, Error: {str(e)}")
            raise StoreFailure("Failed to fetch complaints", cause=e) from e

        total_pages = math.ceil(total / limit)
        app_info_logger.info(f"APP_INFO: Retrieved {len(rows)} complaints - Total: {total}")
        return ComplaintPage(
            items=[_to_complaint(row, media.get(row['id'], [])) for row in rows],
            pagination=PaginationResponse(
                total=total,
                total_pages=total_pages,
                current_page=page,
                limit=limit,
                has_next_page=page < total_pages,
                has_prev_page=page > 1,
            ),
        )

    async def get_complaint(self, complaint_id: Any) -> ComplaintResponse:
        complaint_id = parse_complaint_id(complaint_id)
        app_info_logger.info(f"APP_INFO: Fetching complaint by ID - ComplaintID: {complaint_id}")

        try:
            async with self.database.connection() as connection:
                row = await fetch_complaint(connection, complaint_id)
                media = await fetch_media_for_complaints(connection, [complaint_id]) if row else {}
        except Exception as e:
            app_error_logger.error(f"APP_ERROR: Failed to fetch complaint - ComplaintID: {complaint_id}, Error: {str(e)}")
            raise StoreFailure("Failed to fetch complaint", cause=e) from e

        if row is None:
            app_info_logger.info(f"APP_INFO: Complaint not found - ComplaintID: {complaint_id}")
            raise NotFoundError("Complaint not found")
        return _to_complaint(row, media.get(complaint_id, []))


class LifecycleService:
    def __init__(self, database: Database, blobs: BlobStore):
        self.database = database
        self.blobs = blobs

    async def delete(self, complaint_id: Any) -> DeletionResult:
        """Delete a complaint, its media rows, then its blobs.

        Rows go first, inside one transaction: media, then the complaint.
        Blobs are removed only after the commit, and a blob that cannot be
        removed is logged without failing the deletion.
        """
        complaint_id = parse_complaint_id(complaint_id)
        app_info_logger.info(f"APP_INFO: Deleting complaint - ComplaintID: {complaint_id}")

        try:
            async with self.database.transaction() as connection:
                keys = await fetch_media_keys(connection, complaint_id)
                media_removed = await delete_media_rows(connection, complaint_id)
                if await delete_complaint_row(connection, complaint_id) == 0:
                    raise NotFoundError("Complaint not found")
        except NotFoundError:
            app_info_logger.info(f"APP_INFO: Complaint not found for deletion - ComplaintID: {complaint_id}")
            raise
        except Exception as e:
            app_error_logger.error(f"APP_ERROR: Complaint deletion failed - ComplaintID: {complaint_id}, Error: {str(e)}")
            raise StoreFailure("Failed to delete complaint", cause=e) from e

        result = DeletionResult(complaint_id=complaint_id, media_removed=media_removed, blobs_removed=0)
        for key in keys:
            try:
                await self.blobs.delete(key)
                result.blobs_removed += 1
            except Exception as e:
                result.failed_blobs.append(key)
                error_logger.error(f"SYSTEM_ERROR: Error deleting file - ComplaintID: {complaint_id}, Key: {key}, Error: {str(e)}")

        logger.info(f"✅ Complaint deleted: {complaint_id}")
        info_logger.info(
            f"SYSTEM_INFO: Complaint deleted - ID: {complaint_id}, Media rows: {media_removed}, "
            f"Blobs removed: {result.blobs_removed}/{len(keys)}"
        )
        return result


class AccountService:
    """Registration and login for portal accounts"""

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash password using bcrypt"""
        return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    @staticmethod
    def verify_password(password: str, hashed_password: str) -> bool:
        """Verify password against hash"""
        try:
            return bcrypt.checkpw(password.encode('utf-8'), hashed_password.encode('utf-8'))
        except ValueError:
            return False

    @staticmethod
    def create_access_token(user_id: int, email: str) -> Dict[str, Any]:
        """Create JWT access token"""
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(minutes=JWT_EXPIRATION_MINUTES)

        payload = {
            "user_id": str(user_id),
            "email": email,
            "iat": now,
            "exp": expires_at,
            "type": "access"
        }

        token = jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)

        return {
            "access_token": token,
            "token_type": "bearer",
            "expires_in": JWT_EXPIRATION_MINUTES * 60
        }

    async def register(self, request: RegisterRequest) -> AccountResponse:
        email = request.email.lower()
        logger.info(f"Creating account: {email}")
        info_logger.info(f"SYSTEM_INFO: Account registration started - Email: {email}")

        password_hash = await run_in_threadpool(self.hash_password, request.password)
        try:
            async with self.database.transaction() as connection:
                if await fetch_account_by_email(connection, email):
                    raise ConflictError("Email already registered")
                account = await insert_account(
                    connection, request.full_name.strip(), request.age, request.gender.strip(), email, password_hash
                )
        except ConflictError:
            error_logger.error(f"SYSTEM_ERROR: Account registration failed - Email already exists: {email}")
            raise
        except asyncpg.exceptions.UniqueViolationError as e:
            # lost a race with a concurrent registration
            raise ConflictError("Email already registered", cause=e) from e
        except Exception as e:
            error_logger.error(f"SYSTEM_ERROR: Account registration database error - Email: {email}, Error: {str(e)}")
            raise StoreFailure("Registration failed", cause=e) from e

        logger.info(f"✅ Account created successfully: {email}")
        info_logger.info(f"SYSTEM_INFO: Account created - UserID: {account['id']}, Email: {email}")
        return AccountResponse(**account)

    async def login(self, email: str, password: str) -> LoginResponse:
        email = email.strip().lower()
        info_logger.info(f"SYSTEM_INFO: Login attempt - Email: {email}")

        try:
            async with self.database.connection() as connection:
                account = await fetch_account_by_email(connection, email)
        except Exception as e:
            error_logger.error(f"SYSTEM_ERROR: Login database error - Email: {email}, Error: {str(e)}")
            raise StoreFailure("Login failed", cause=e) from e

        if not account or not await run_in_threadpool(self.verify_password, password, account['password_hash']):
            logger.warning(f"❌ Authentication failed for: {email}")
            error_logger.error(f"SYSTEM_ERROR: Authentication failed - Invalid credentials for Email: {email}")
            raise AuthenticationError("Invalid email or password")

        info_logger.info(f"SYSTEM_INFO: Login successful - UserID: {account['id']}, Email: {email}")
        token = self.create_access_token(account['id'], account['email'])
        return LoginResponse(
            message="Login successful",
            user=AccountResponse(**account),
            **token,
        )
