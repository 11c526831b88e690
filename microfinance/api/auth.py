"""
Authentication and authorization dependencies
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..audit import AuditTrail
from ..config import MicrofinanceConfig, get_config
from ..errors import PermissionDeniedError, UnauthenticatedError
from ..ledger import PaymentLedger
from ..loans import LoanManager
from ..reporting import ReportingEngine
from ..schedule import ScheduleGenerator
from ..storage import StorageInterface


class BackOffice:
    """Back office components wired around one store client"""

    def __init__(self, storage: StorageInterface, config: MicrofinanceConfig):
        tz = config.business_timezone

        self.storage = storage
        self.audit_trail = AuditTrail(storage, enabled=config.enable_audit_logging)
        self.loan_manager = LoanManager(storage, self.audit_trail, tz=tz)
        self.scheduler = ScheduleGenerator(storage, self.audit_trail, tz=tz)
        self.ledger = PaymentLedger(
            storage, self.audit_trail,
            reopen_installments_on_reversal=config.reopen_installments_on_reversal
        )
        self.reporting_engine = ReportingEngine(
            storage, self.loan_manager, self.ledger,
            tz=tz, max_days=config.report_max_days
        )


@dataclass
class Caller:
    """Identity behind a request"""
    user_id: str
    is_admin: bool = False


# JWT Security
security = HTTPBearer(auto_error=False)


def get_back_office(request: Request) -> BackOffice:
    return request.app.state.back_office


def get_settings(request: Request) -> MicrofinanceConfig:
    return request.app.state.config


def get_current_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    config: MicrofinanceConfig = Depends(get_settings)
) -> Caller:
    """Dependency that validates the bearer JWT and returns the caller"""
    if not config.auth_enabled:
        return Caller(user_id="test_user", is_admin=True)  # For tests when auth is disabled

    if not credentials:
        raise UnauthenticatedError("Not authenticated")
    try:
        payload = jwt.decode(
            credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError:
        raise UnauthenticatedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthenticatedError("Invalid token")
    return Caller(user_id=user_id, is_admin=bool(payload.get("is_admin", False)))


def require_admin(caller: Caller = Depends(get_current_caller)) -> Caller:
    """Dependency that only lets administrators through"""
    if not caller.is_admin:
        raise PermissionDeniedError("Administrator role required")
    return caller


def create_access_token(
    user_id: str,
    is_admin: bool = False,
    config: Optional[MicrofinanceConfig] = None,
    expires_in: Optional[timedelta] = None
) -> str:
    """Issue a signed bearer token for a back office user"""
    config = config or get_config()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "is_admin": is_admin,
        "iat": now,
        "exp": now + (expires_in or timedelta(hours=config.jwt_expiry_hours)),
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)
