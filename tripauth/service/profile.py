from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from tripauth.logging import get_logger
from tripauth.service.errors import AccountNotFound, ValidationError
from tripauth.storage.models import PROFILE_VISIBILITY_CHOICES, Account, utcnow

logger = get_logger(__name__)


class ProfileField(str, Enum):
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    BIO = "bio"
    LOCATION = "location"
    WEBSITE = "website"
    PHONE = "phone"
    TRAVEL_STYLE = "travel_style"
    LANGUAGES = "languages"
    INTERESTS = "interests"
    PROFILE_VISIBILITY = "profile_visibility"
    EMAIL_NOTIFICATIONS = "email_notifications"
    PUSH_NOTIFICATIONS = "push_notifications"


_STRING_FIELDS = frozenset(
    {
        ProfileField.FIRST_NAME,
        ProfileField.LAST_NAME,
        ProfileField.BIO,
        ProfileField.LOCATION,
        ProfileField.WEBSITE,
    }
)
_NULLABLE_STRING_FIELDS = frozenset({ProfileField.PHONE, ProfileField.TRAVEL_STYLE})
_LIST_FIELDS = frozenset({ProfileField.LANGUAGES, ProfileField.INTERESTS})
_BOOL_FIELDS = frozenset(
    {ProfileField.EMAIL_NOTIFICATIONS, ProfileField.PUSH_NOTIFICATIONS}
)


class UnknownFieldPolicy(str, Enum):
    IGNORE = "ignore"
    REJECT = "reject"


@dataclass(frozen=True)
class ProfileMutation:
    """A single typed change to one recognized profile field."""

    field: ProfileField
    value: Any

    def __post_init__(self) -> None:
        try:
            field = ProfileField(self.field)
        except ValueError:
            raise ValidationError(
                f"unknown profile field {self.field}", detail={"field": str(self.field)}
            ) from None
        object.__setattr__(self, "field", field)
        object.__setattr__(self, "value", _coerce(field, self.value))


def _invalid(field: ProfileField, expected: str, value: Any) -> ValidationError:
    return ValidationError(
        f"{field.value} must be {expected}",
        detail={"field": field.value, "received": type(value).__name__},
    )


def _coerce(field: ProfileField, value: Any) -> Any:
    if field in _STRING_FIELDS:
        if not isinstance(value, str):
            raise _invalid(field, "a string", value)
        if field is ProfileField.FIRST_NAME and not value.strip():
            raise ValidationError(
                "first_name must not be empty", detail={"field": field.value}
            )
        return value
    if field in _NULLABLE_STRING_FIELDS:
        if value is not None and not isinstance(value, str):
            raise _invalid(field, "a string or null", value)
        return value
    if field in _LIST_FIELDS:
        # str is a sequence too; reject it explicitly
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
            raise _invalid(field, "a list of strings", value)
        if not all(isinstance(item, str) for item in value):
            raise _invalid(field, "a list of strings", value)
        return list(value)
    if field in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise _invalid(field, "a boolean", value)
        return value
    if field is ProfileField.PROFILE_VISIBILITY:
        if value not in PROFILE_VISIBILITY_CHOICES:
            raise ValidationError(
                "profile_visibility must be one of " + ", ".join(PROFILE_VISIBILITY_CHOICES),
                detail={"field": field.value},
            )
        return value
    raise ValidationError(f"unsupported profile field {field.value}")


def parse_profile_updates(
    raw: Mapping[str, Any],
    *,
    unknown: UnknownFieldPolicy = UnknownFieldPolicy.IGNORE,
) -> List[ProfileMutation]:
    """Turn a loosely-typed update map into typed mutations.

    Unrecognized keys are dropped under ``IGNORE`` and rejected under
    ``REJECT``. A recognized key carrying the wrong type always raises
    ``ValidationError``.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("profile updates must be a mapping")
    mutations: List[ProfileMutation] = []
    ignored: List[str] = []
    for key, value in raw.items():
        try:
            field = ProfileField(key)
        except ValueError:
            if unknown is UnknownFieldPolicy.REJECT:
                raise ValidationError(
                    f"unknown profile field {key}", detail={"field": key}
                ) from None
            ignored.append(str(key))
            continue
        mutations.append(ProfileMutation(field, value))
    if ignored:
        logger.debug("profile_update_ignored_fields", fields=ignored)
    return mutations


def apply_profile_mutations(
    account: Account, mutations: Sequence[ProfileMutation], now: Optional[datetime] = None
) -> Account:
    """Return a copy of ``account`` with ``mutations`` applied.

    ``updated_at`` is stamped only when there is at least one mutation.
    """
    if not mutations:
        return account
    changes = {}
    for mutation in mutations:
        value = mutation.value
        if isinstance(value, list):
            value = list(value)
        changes[mutation.field.value] = value
    changes["updated_at"] = now or utcnow()
    return dataclasses.replace(account, **changes)


class AccountReader(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def update_account(self, account: Account) -> Account:
        ...


@runtime_checkable
class PartialProfileStore(Protocol):
    """Optional store capability: atomic partial update of profile fields."""

    def apply_profile_mutations(
        self, account_id: str, mutations: Sequence[ProfileMutation], now: datetime
    ) -> Optional[Account]:
        ...


class ProfileUpdater:
    """Applies profile mutations through the best primitive the store offers.

    The store's capability is negotiated once here rather than per call.
    """

    def __init__(self, accounts: AccountReader) -> None:
        self.accounts = accounts
        self.atomic = isinstance(accounts, PartialProfileStore)

    def update(
        self,
        account_id: str,
        mutations: Iterable[ProfileMutation],
        now: Optional[datetime] = None,
    ) -> Account:
        mutations = list(mutations)
        seen = set()
        for mutation in mutations:
            if mutation.field in seen:
                raise ValidationError(
                    f"duplicate profile field {mutation.field.value}",
                    detail={"field": mutation.field.value},
                )
            seen.add(mutation.field)
        stamp = now or utcnow()
        if self.atomic:
            updated = self.accounts.apply_profile_mutations(account_id, mutations, stamp)
            if updated is None:
                raise AccountNotFound("account not found", detail={"account_id": account_id})
            return updated
        account = self.accounts.get_account(account_id)
        if account is None:
            raise AccountNotFound("account not found", detail={"account_id": account_id})
        if not mutations:
            return account
        return self.accounts.update_account(apply_profile_mutations(account, mutations, stamp))
