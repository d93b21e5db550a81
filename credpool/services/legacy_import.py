"""
Legacy Import - adapters from external export formats to registrations.

Two sources are supported:
- Kiro account-manager exports: a JSON array of camelCase records,
  bulk-imported through LegacyImporter.import_batch.
- QwenCli credential files: one snake_case object, converted by
  qwen_registration_from_export.

Export shapes belong to the tools that produced them, so records arrive
as plain dicts and are validated here field by field. Secrets are never
logged; records are identified by email, label or id.
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from credpool.exceptions import DuplicateAccountError, InvalidInputError, PoolError
from credpool.models.api import AccountStatus, Provider, QwenCredential
from credpool.models.domain import AccountRegistration, ProviderIdentity
from credpool.observability.metrics import metrics
from credpool.services.pool_manager import CredentialPoolManager
from credpool.services.usage import (
    extract_usage,
    extract_user_info,
    normalize_resource_url,
    parse_expiry_millis,
)

logger = get_logger(__name__)

# Status values the Kiro account manager writes for a healthy account
ACTIVE_EXPORT_STATUSES = frozenset({"正常", "active", "normal"})
DISABLED_EXPORT_STATUSES = frozenset({"禁用", "disabled"})

# Kiro provider label for AWS Builder ID (IdC device-code registration)
BUILDER_ID_PROVIDER = "BuilderId"


@dataclass(frozen=True)
class ImportSummary:
    """Outcome counts of one bulk import."""

    imported: int = 0
    skipped: int = 0
    failed: int = 0
    filtered: int = 0

    @property
    def total(self) -> int:
        return self.imported + self.skipped + self.failed + self.filtered


def _text(value: Any) -> str | None:
    """Stripped non-empty string, else None."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _record_label(record: dict[str, Any]) -> str:
    return _text(record.get("email")) or _text(record.get("label")) or str(record.get("id", "?"))


def is_importable(record: Any) -> bool:
    """Active status and a non-blank refresh token."""
    if not isinstance(record, dict):
        return False
    status = _text(record.get("status"))
    if status is None or status.lower() not in ACTIVE_EXPORT_STATUSES:
        return False
    return _text(record.get("refreshToken")) is not None


def _export_status(value: Any) -> AccountStatus:
    status = _text(value)
    if status is not None and status.lower() in DISABLED_EXPORT_STATUSES:
        return AccountStatus.DISABLED
    return AccountStatus.ACTIVE


def _datetime_from_text(value: Any) -> datetime | None:
    millis = parse_expiry_millis(value)
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


class LegacyImporter:
    """
    Bulk import of Kiro account-manager exports.

    Usage:
        importer = LegacyImporter(manager)
        summary = await importer.import_batch(records, owner_user_id="u-1")
    """

    def __init__(self, manager: CredentialPoolManager) -> None:
        self.manager = manager

    @staticmethod
    def filter_records(records: list[Any]) -> tuple[list[dict[str, Any]], int]:
        """
        Pre-pass over an export.

        Returns:
            (importable records, number filtered out)
        """
        kept = [record for record in records if is_importable(record)]
        return kept, len(records) - len(kept)

    @staticmethod
    def to_registration(record: dict[str, Any], is_shared: bool = False) -> AccountRegistration:
        """Map one Kiro export record onto an AccountRegistration."""
        usage_payload = record.get("usageData")
        fallback = extract_user_info(usage_payload)

        provider = (
            Provider.KIRO_IDC
            if record.get("provider") == BUILDER_ID_PROVIDER
            else Provider.KIRO_SOCIAL
        )
        email = _text(record.get("email")) or fallback.email

        return AccountRegistration(
            provider=provider,
            refresh_token=_text(record.get("refreshToken")),
            access_token=_text(record.get("accessToken")) or "",
            expires_at=parse_expiry_millis(record.get("expiresAt")),
            account_id=_text(record.get("id")),
            account_name=_text(record.get("label")) or f"Kiro {email or 'Unknown'}",
            is_shared=is_shared,
            status=_export_status(record.get("status")),
            client_id=_text(record.get("clientId")),
            client_secret=_text(record.get("clientSecret")),
            region=_text(record.get("region")),
            profile_arn=_text(record.get("profileArn")),
            identity=ProviderIdentity(
                remote_user_id=_text(record.get("userId")) or fallback.remote_user_id,
                machine_id=_text(record.get("machineId")) or str(uuid4()),
                email=email,
            ),
            usage=extract_usage(usage_payload),
        )

    async def import_batch(
        self,
        records: list[Any],
        owner_user_id: str | None,
        is_shared: bool = False,
    ) -> ImportSummary:
        """
        Filter, map and register every record of an export.

        Duplicates are skipped; any other per-record failure is counted
        and logged without aborting the batch.
        """
        candidates, filtered = self.filter_records(records)
        logger.info(
            "legacy_import_started",
            total=len(records),
            importable=len(candidates),
            filtered=filtered,
            owner_user_id=owner_user_id,
        )

        imported = skipped = failed = 0
        for index, record in enumerate(candidates, start=1):
            label = _record_label(record)
            try:
                registration = self.to_registration(record, is_shared=is_shared)
                account = await self.manager.register(registration, owner_user_id)
            except DuplicateAccountError as e:
                skipped += 1
                metrics.record_import("kiro", "skipped")
                logger.info(
                    "legacy_import_skipped_duplicate",
                    position=index,
                    record=label,
                    existing_account_id=e.existing_id,
                )
            except PoolError as e:
                failed += 1
                metrics.record_import("kiro", "failed")
                logger.warning(
                    "legacy_import_record_failed",
                    position=index,
                    record=label,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            except SQLAlchemyError as e:
                # Statement parameters carry tokens; log the type only
                failed += 1
                metrics.record_import("kiro", "failed")
                logger.error(
                    "legacy_import_record_failed",
                    position=index,
                    record=label,
                    error_type=type(e).__name__,
                )
            else:
                imported += 1
                metrics.record_import("kiro", "imported")
                logger.info(
                    "legacy_import_record_imported",
                    position=index,
                    record=label,
                    account_id=account.account_id,
                )

        summary = ImportSummary(
            imported=imported, skipped=skipped, failed=failed, filtered=filtered
        )
        logger.info(
            "legacy_import_completed",
            imported=summary.imported,
            skipped=summary.skipped,
            failed=summary.failed,
            filtered=summary.filtered,
        )
        return summary


def parse_qwen_credential(
    credential: QwenCredential | None, credential_json: str | None
) -> QwenCredential:
    """Resolve the structured credential or parse the raw QwenCli export."""
    if credential is not None:
        return credential
    if credential_json is None:
        raise InvalidInputError("credential or credential_json is required")
    try:
        payload = json.loads(credential_json)
    except json.JSONDecodeError as e:
        raise InvalidInputError("credential_json is not valid JSON") from e
    if not isinstance(payload, dict):
        raise InvalidInputError("credential_json must be a JSON object")
    return QwenCredential.model_validate(payload)


def qwen_registration_from_export(
    credential: QwenCredential,
    account_name: str | None = None,
    is_shared: bool = False,
) -> AccountRegistration:
    """
    Map a QwenCli credential file onto an AccountRegistration.

    Raises:
        InvalidInputError: Wrong type, or missing access/refresh token
    """
    credential_type = _text(credential.type)
    if credential_type and credential_type != "qwen":
        raise InvalidInputError("only type=qwen credential files are supported")

    access_token = _text(credential.access_token)
    if access_token is None:
        raise InvalidInputError("access_token is required")

    refresh_token = _text(credential.refresh_token)
    if refresh_token is None:
        raise InvalidInputError("refresh_token is required")

    email = _text(credential.email)
    return AccountRegistration(
        provider=Provider.QWEN,
        refresh_token=refresh_token,
        access_token=access_token,
        expires_at=parse_expiry_millis(credential.expired),
        account_name=_text(account_name) or email or "Qwen Account",
        is_shared=is_shared,
        resource_url=normalize_resource_url(credential.resource_url),
        identity=ProviderIdentity(email=email),
        last_refresh=_datetime_from_text(credential.last_refresh),
    )
