"""
Redaction rule catalog.

A tenant keeps named, reusable filters (e.g. "NO_PII" or "EXTERNAL_AUDIT").
A manifest request names the rules to apply; their criteria are merged into
the request's explicit filters, always towards the more restrictive result.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from govflow.errors import NotFoundError, ValidationError
from govflow.storage.database import Database
from govflow.storage.models import (
    ManifestFilters,
    PiiLevel,
    RedactionRule,
    check_tenant,
    format_ts,
    new_id,
    require_text,
    utcnow,
)

logger = logging.getLogger(__name__)


def merge_filters(base: ManifestFilters, rule: ManifestFilters) -> ManifestFilters:
    """
    Merge two filter sets into the more restrictive combination.

    The lower PII maximum wins; excluded tags and sources are unioned.
    """
    levels = [p for p in (base.pii_level_max, rule.pii_level_max) if p is not None]
    pii_max: PiiLevel | None = min(levels, key=lambda p: p.rank) if levels else None
    return ManifestFilters(
        pii_level_max=pii_max,
        exclude_tags=sorted(set(base.exclude_tags) | set(rule.exclude_tags)),
        exclude_sources=sorted(set(base.exclude_sources) | set(rule.exclude_sources)),
        redaction_rules=list(base.redaction_rules),
    )


class RedactionCatalog:
    """Per-tenant catalog of named redaction rules."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert_rule(
        self,
        tenant_id: str,
        code: str,
        rule: ManifestFilters | dict[str, Any],
        updated_by: str,
        description: str | None = None,
        enabled: bool = True,
    ) -> RedactionRule:
        """
        Create or replace a rule.

        Raises:
            ValidationError: If the rule itself references other rules.
        """
        check_tenant(tenant_id)
        code = require_text(code, "code", tenant_id).upper()
        updated_by = require_text(updated_by, "updated_by", tenant_id)
        if isinstance(rule, dict):
            rule = ManifestFilters.from_dict(rule)
        if rule.redaction_rules:
            raise ValidationError(
                "A redaction rule cannot reference other rules", tenant_id=tenant_id
            )

        now = utcnow()
        rule_json = json.dumps(
            {k: v for k, v in rule.to_dict().items() if k != "redaction_rules"},
            sort_keys=True,
        )
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT INTO evd_redaction_rule (
                    id, tenant_id, code, description, rule_json, enabled, updated_by, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, code) DO UPDATE SET
                    description = excluded.description,
                    rule_json = excluded.rule_json,
                    enabled = excluded.enabled,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
                """,
                (
                    new_id(),
                    tenant_id,
                    code,
                    description,
                    rule_json,
                    1 if enabled else 0,
                    updated_by,
                    format_ts(now),
                ),
            )

        logger.info(f"Saved redaction rule {code} for tenant {tenant_id} (enabled={enabled})")
        return self.get_rule(tenant_id, code)

    def get_rule(self, tenant_id: str, code: str) -> RedactionRule:
        """
        Raises:
            NotFoundError: If the tenant has no rule with this code.
        """
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evd_redaction_rule WHERE tenant_id = ? AND code = ?",
                (tenant_id, code.upper()),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Redaction rule not found: {code}", tenant_id=tenant_id)
        return RedactionRule.from_row(row)

    def list_rules(self, tenant_id: str, enabled_only: bool = False) -> list[RedactionRule]:
        query = "SELECT * FROM evd_redaction_rule WHERE tenant_id = ?"
        if enabled_only:
            query += " AND enabled = 1"
        query += " ORDER BY code"
        with self.db.connection() as conn:
            rows = conn.execute(query, (tenant_id,)).fetchall()
        return [RedactionRule.from_row(row) for row in rows]

    def resolve_filters(self, tenant_id: str, filters: ManifestFilters) -> ManifestFilters:
        """
        Merge every named rule into the explicit filters.

        Returns:
            Resolved filters, with redaction_rules set to the sorted codes
            that were applied.

        Raises:
            ValidationError: If a named rule is unknown or disabled.
        """
        resolved = ManifestFilters(
            pii_level_max=filters.pii_level_max,
            exclude_tags=sorted(set(filters.exclude_tags)),
            exclude_sources=sorted(set(filters.exclude_sources)),
        )
        applied: list[str] = []
        for code in sorted({c.upper() for c in filters.redaction_rules}):
            try:
                rule = self.get_rule(tenant_id, code)
            except NotFoundError:
                raise ValidationError(
                    f"Unknown redaction rule: {code}", tenant_id=tenant_id
                ) from None
            if not rule.enabled:
                raise ValidationError(f"Redaction rule {code} is disabled", tenant_id=tenant_id)
            resolved = merge_filters(resolved, rule.rule)
            applied.append(code)

        resolved.redaction_rules = applied
        return resolved
