"""
Command-line interface for govflow.

Provides commands for period runs, work-item transitions, the SLA clock and
the evidence chain (upload, manifest, binder, attestation).

Uses Python's argparse module (no external CLI libraries).

The tenant and the acting identity come from --tenant/--actor or the
GOVFLOW_TENANT/GOVFLOW_ACTOR environment variables; the CLI trusts them as
given, the same way the service trusts its authentication layer.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

from govflow import __version__
from govflow.config.settings import (
    DEFAULT_CONFIG_DIR,
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)
from govflow.errors import GovflowError, ValidationError
from govflow.storage.models import WorkItemState

if TYPE_CHECKING:
    from govflow.service import GovernanceService

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def output_json(data: Any) -> None:
    output(json.dumps(data, indent=2, sort_keys=True, default=str), force=True)


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    """Manifest filter options shared by `manifest build` and `redaction set`."""
    parser.add_argument(
        "--max-pii",
        choices=["NONE", "LOW", "MEDIUM", "HIGH"],
        type=str.upper,
        help="Exclude records above this PII level",
    )
    parser.add_argument(
        "--exclude-tag",
        action="append",
        default=[],
        metavar="TAG",
        help="Exclude records carrying this tag (repeatable)",
    )
    parser.add_argument(
        "--exclude-source",
        action="append",
        default=[],
        metavar="SOURCE",
        help="Exclude records from this source type (repeatable)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for govflow CLI."""
    parser = argparse.ArgumentParser(
        prog="govflow",
        description="Governed workflow engine for period-close work and evidence",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"govflow {__version__}",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.govflow/config.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )
    parser.add_argument(
        "--tenant",
        default=os.environ.get("GOVFLOW_TENANT"),
        help="Tenant id (default: $GOVFLOW_TENANT)",
    )
    parser.add_argument(
        "--actor",
        default=os.environ.get("GOVFLOW_ACTOR"),
        help="Acting identity (default: $GOVFLOW_ACTOR or the login name)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize govflow configuration",
        description="Create the config file and data directory.",
    )
    init_parser.add_argument(
        "--generate-key",
        action="store_true",
        help="Also create an Ed25519 attestation signing key",
    )
    init_parser.set_defaults(func=cmd_init)

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show system information and storage statistics",
    )
    info_parser.set_defaults(func=cmd_info)

    # evidence commands
    evidence_parser = subparsers.add_parser("evidence", help="Upload, link and list evidence")
    evidence_sub = evidence_parser.add_subparsers(dest="action", metavar="<action>", required=True)

    upload_parser = evidence_sub.add_parser("upload", help="Store a file as evidence")
    upload_parser.add_argument("path", help="File to upload")
    upload_parser.add_argument("--mime", required=True, help="Content type, e.g. application/pdf")
    upload_parser.add_argument("--source", required=True, help="Source type, e.g. ERP or MANUAL")
    upload_parser.add_argument("--source-id", required=True, help="Identifier in the source system")
    upload_parser.add_argument("--title", required=True, help="Record title")
    upload_parser.add_argument("--note", help="Free-text note")
    upload_parser.add_argument("--tag", action="append", default=[], help="Tag (repeatable)")
    upload_parser.add_argument(
        "--pii",
        choices=["NONE", "LOW", "MEDIUM", "HIGH"],
        type=str.upper,
        default="NONE",
        help="PII level (default: NONE)",
    )
    upload_parser.add_argument("--sha256", help="Expected SHA-256; upload fails on mismatch")
    upload_parser.add_argument("--link-kind", help="Link the record to this reference kind")
    upload_parser.add_argument("--link-ref", help="Link the record to this reference id")
    upload_parser.set_defaults(func=cmd_evidence_upload)

    link_parser = evidence_sub.add_parser("link", help="Link a record to a reference")
    link_parser.add_argument("record_id")
    link_parser.add_argument("kind", help="Reference kind, e.g. CLOSE_TASK")
    link_parser.add_argument("ref_id")
    link_parser.set_defaults(func=cmd_evidence_link)

    list_parser = evidence_sub.add_parser("list", help="List records linked to a reference")
    list_parser.add_argument("kind")
    list_parser.add_argument("ref_id")
    list_parser.set_defaults(func=cmd_evidence_list)

    # redaction commands
    redaction_parser = subparsers.add_parser("redaction", help="Manage redaction rules")
    redaction_sub = redaction_parser.add_subparsers(dest="action", metavar="<action>", required=True)

    rule_set_parser = redaction_sub.add_parser("set", help="Create or replace a rule")
    rule_set_parser.add_argument("code")
    rule_set_parser.add_argument("--description")
    rule_set_parser.add_argument("--disabled", action="store_true", help="Store the rule disabled")
    _add_filter_arguments(rule_set_parser)
    rule_set_parser.set_defaults(func=cmd_redaction_set)

    rule_list_parser = redaction_sub.add_parser("list", help="List rules")
    rule_list_parser.set_defaults(func=cmd_redaction_list)

    # manifest commands
    manifest_parser = subparsers.add_parser("manifest", help="Build and verify manifests")
    manifest_sub = manifest_parser.add_subparsers(dest="action", metavar="<action>", required=True)

    build_manifest_parser = manifest_sub.add_parser("build", help="Build a manifest for a scope")
    build_manifest_parser.add_argument("scope_kind", help="Scope kind, e.g. CLOSE_TASK")
    build_manifest_parser.add_argument("scope_id")
    build_manifest_parser.add_argument(
        "--rule",
        action="append",
        default=[],
        metavar="CODE",
        help="Apply a redaction rule (repeatable)",
    )
    _add_filter_arguments(build_manifest_parser)
    build_manifest_parser.set_defaults(func=cmd_manifest_build)

    verify_manifest_parser = manifest_sub.add_parser("verify", help="Recompute a manifest checksum")
    verify_manifest_parser.add_argument("manifest_id")
    verify_manifest_parser.set_defaults(func=cmd_manifest_verify)

    # binder commands
    binder_parser = subparsers.add_parser("binder", help="Build and verify binders")
    binder_sub = binder_parser.add_subparsers(dest="action", metavar="<action>", required=True)

    build_binder_parser = binder_sub.add_parser("build", help="Package a manifest into an archive")
    build_binder_parser.add_argument("manifest_id")
    build_binder_parser.add_argument(
        "--format",
        choices=["ZIP", "TAR"],
        type=str.upper,
        help="Archive format (default: from config)",
    )
    build_binder_parser.add_argument("--idempotency-key")
    build_binder_parser.set_defaults(func=cmd_binder_build)

    verify_binder_parser = binder_sub.add_parser("verify", help="Re-hash a stored binder")
    verify_binder_parser.add_argument("binder_id")
    verify_binder_parser.set_defaults(func=cmd_binder_verify)

    # attest commands
    attest_parser = subparsers.add_parser("attest", help="Sign and verify attestations")
    attest_sub = attest_parser.add_subparsers(dest="action", metavar="<action>", required=True)

    sign_parser = attest_sub.add_parser("sign", help="Attest to a binder")
    sign_parser.add_argument("binder_id")
    sign_parser.add_argument("--role", required=True, type=str.upper, help="Signer role")
    sign_parser.add_argument("--statement", required=True)
    sign_parser.add_argument("--idempotency-key")
    sign_parser.set_defaults(func=cmd_attest_sign)

    verify_attest_parser = attest_sub.add_parser("verify", help="Verify an attestation")
    verify_attest_parser.add_argument("attestation_id")
    verify_attest_parser.set_defaults(func=cmd_attest_verify)

    keygen_parser = attest_sub.add_parser("keygen", help="Create an Ed25519 signing key")
    keygen_parser.add_argument("path", help="Where to write the PEM key")
    keygen_parser.set_defaults(func=cmd_attest_keygen)

    # run commands
    run_parser = subparsers.add_parser("run", help="Manage period runs")
    run_sub = run_parser.add_subparsers(dest="action", metavar="<action>", required=True)

    create_run_parser = run_sub.add_parser("create", help="Create a run for a period")
    create_run_parser.add_argument("period", help="Period, e.g. 2025-01")
    create_run_parser.add_argument("--owner", help="Run owner (default: the actor)")
    create_run_parser.add_argument("--notes")
    create_run_parser.set_defaults(func=cmd_run_create)

    start_run_parser = run_sub.add_parser("start", help="Start a run and create its work items")
    start_run_parser.add_argument("run_id")
    start_run_parser.add_argument(
        "--assign",
        action="append",
        default=[],
        metavar="CODE=OWNER",
        help="Assign a task code to an owner (repeatable)",
    )
    start_run_parser.set_defaults(func=cmd_run_start)

    close_run_parser = run_sub.add_parser("close", help="Close a run")
    close_run_parser.add_argument("run_id")
    close_run_parser.add_argument("--lock", action="store_true", help="Also lock the period")
    close_run_parser.set_defaults(func=cmd_run_close)

    publish_run_parser = run_sub.add_parser("publish", help="Publish a closed run")
    publish_run_parser.add_argument("run_id")
    publish_run_parser.set_defaults(func=cmd_run_publish)

    lock_parser = run_sub.add_parser("lock", help="Lock a period")
    lock_parser.add_argument("period")
    lock_parser.set_defaults(func=cmd_run_lock)

    unlock_parser = run_sub.add_parser("unlock", help="Unlock a period")
    unlock_parser.add_argument("period")
    unlock_parser.set_defaults(func=cmd_run_unlock)

    progress_parser = run_sub.add_parser("progress", help="Show run progress")
    progress_parser.add_argument("run_id")
    progress_parser.set_defaults(func=cmd_run_progress)

    run_list_parser = run_sub.add_parser("list", help="List runs")
    run_list_parser.set_defaults(func=cmd_run_list)

    # item commands
    item_parser = subparsers.add_parser("item", help="Move work items through their lifecycle")
    item_sub = item_parser.add_subparsers(dest="action", metavar="<action>", required=True)

    item_start_parser = item_sub.add_parser("start", help="Begin work on an item")
    item_start_parser.add_argument("item_id")
    item_start_parser.set_defaults(func=cmd_item_start)

    item_submit_parser = item_sub.add_parser("submit", help="Submit an item for approval")
    item_submit_parser.add_argument("item_id")
    item_submit_parser.add_argument(
        "--evidence",
        action="append",
        default=[],
        metavar="RECORD_ID",
        help="Attach an evidence record (repeatable)",
    )
    item_submit_parser.add_argument("--answers", metavar="JSON", help="Answers as a JSON object")
    item_submit_parser.set_defaults(func=cmd_item_submit)

    item_return_parser = item_sub.add_parser("return", help="Return an item to its owner")
    item_return_parser.add_argument("item_id")
    item_return_parser.add_argument("--reason", required=True)
    item_return_parser.set_defaults(func=cmd_item_return)

    item_approve_parser = item_sub.add_parser("approve", help="Approve a submitted item")
    item_approve_parser.add_argument("item_id")
    item_approve_parser.add_argument("--role", required=True, type=str.upper, help="Actor role")
    item_approve_parser.set_defaults(func=cmd_item_approve)

    item_reject_parser = item_sub.add_parser("reject", help="Reject a submitted item")
    item_reject_parser.add_argument("item_id")
    item_reject_parser.add_argument("--role", required=True, type=str.upper, help="Actor role")
    item_reject_parser.add_argument("--reason", required=True)
    item_reject_parser.set_defaults(func=cmd_item_reject)

    item_complete_parser = item_sub.add_parser("complete", help="Complete an item with no approver")
    item_complete_parser.add_argument("item_id")
    item_complete_parser.set_defaults(func=cmd_item_complete)

    item_list_parser = item_sub.add_parser("list", help="List work items")
    item_list_parser.add_argument("--run", dest="run_id", help="Only items of this run")
    item_list_parser.add_argument(
        "--state",
        action="append",
        default=[],
        choices=[s.value for s in WorkItemState],
        type=str.upper,
        help="Only items in this state (repeatable)",
    )
    item_list_parser.set_defaults(func=cmd_item_list)

    # sla commands
    sla_parser = subparsers.add_parser("sla", help="SLA policy and clock")
    sla_sub = sla_parser.add_subparsers(dest="action", metavar="<action>", required=True)

    policy_parser = sla_sub.add_parser(
        "policy",
        help="Show or set the tenant's SLA policy",
        description="Without options, show the effective policy. With any option, store a policy.",
    )
    policy_parser.add_argument("--tz", help="IANA time zone, e.g. Europe/Berlin")
    policy_parser.add_argument("--cutoff-day", type=int)
    policy_parser.add_argument("--grace-hours", type=int)
    policy_parser.add_argument("--escal1-hours", type=int)
    policy_parser.add_argument("--escal2-hours", type=int)
    policy_parser.add_argument("--escal-to-lvl1", help="Who is notified on LATE")
    policy_parser.add_argument("--escal-to-lvl2", help="Who is notified on ESCALATED")
    policy_parser.set_defaults(func=cmd_sla_policy)

    tick_parser = sla_sub.add_parser("tick", help="Evaluate SLA severities now")
    tick_parser.add_argument("--run", dest="run_id", help="Only items of this run")
    tick_parser.add_argument(
        "--all",
        action="store_true",
        dest="all_tenants",
        help="Tick every tenant with open work",
    )
    tick_parser.set_defaults(func=cmd_sla_tick)

    summary_parser = sla_sub.add_parser("summary", help="Severity counts and aging")
    summary_parser.add_argument("--run", dest="run_id", help="Only items of this run")
    summary_parser.set_defaults(func=cmd_sla_summary)

    daemon_parser = sla_sub.add_parser(
        "daemon",
        help="Run the SLA clock on a timer",
        description="Tick every tenant at the configured interval until interrupted.",
    )
    daemon_parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    daemon_parser.add_argument("--status", action="store_true", help="Show the last recorded pass")
    daemon_parser.set_defaults(func=cmd_sla_daemon)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_settings(args: argparse.Namespace) -> Settings:
    """Load configuration; the configured log level applies unless -v/-q was given."""
    config_path = Path(args.config) if args.config else None
    settings = load_config(config_path)
    if not args.verbose and not args.quiet:
        logging.getLogger().setLevel(settings.log_level)
    return settings


def open_service(args: argparse.Namespace) -> GovernanceService:
    from govflow.service import GovernanceService

    return GovernanceService.from_settings(load_settings(args))


def require_tenant(args: argparse.Namespace) -> str:
    if not args.tenant:
        raise ValidationError("A tenant is required (--tenant or GOVFLOW_TENANT)")
    return args.tenant


def resolve_actor(args: argparse.Namespace) -> str:
    return args.actor or getpass.getuser()


def _filters_from_args(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "pii_level_max": args.max_pii,
        "exclude_tags": args.exclude_tag,
        "exclude_sources": args.exclude_source,
    }


def _print_item(item: Any) -> None:
    output(f"{item.code} [{item.id}]")
    output(f"  State: {item.state.value}  SLA: {item.sla_severity.value}")
    output(f"  Owner: {item.owner}  Approver: {item.approver or '-'}")
    if item.due_at:
        output(f"  Due: {item.due_at.isoformat()}")


def _print_run(run: Any) -> None:
    output(f"Run {run.period} [{run.id}]")
    output(f"  Status: {run.status.value}  Owner: {run.owner}")


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize govflow configuration."""
    from govflow.evidence.attestation import generate_signing_key

    config_path = Path(args.config) if args.config else get_config_path()

    output("govflow Initialization")
    output("=" * 50)
    output()

    if config_path.exists():
        settings = load_config(config_path)
        output(f"Configuration already exists: {config_path}")
    else:
        settings = Settings()
        save_config(settings, config_path)
        output(f"Configuration file created: {config_path}")

    data_dir = Path(settings.data_dir).expanduser()
    data_dir.mkdir(parents=True, exist_ok=True)
    output(f"Data directory: {data_dir}")

    if args.generate_key:
        key_path = DEFAULT_CONFIG_DIR / "signing_key.pem"
        fingerprint = generate_signing_key(key_path)
        settings.attestation.signing_key_path = str(key_path)
        save_config(settings, config_path)
        output(f"Signing key created: {key_path}")
        output(f"  Fingerprint: {fingerprint}")

    output()
    output("Next steps:")
    output("  1. Set GOVFLOW_TENANT and GOVFLOW_ACTOR (or pass --tenant/--actor)")
    output("  2. Run 'govflow run create 2025-01' to open a period")
    output("  3. Run 'govflow sla daemon' to keep SLA severities current")
    output()
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Show system information and storage statistics."""
    import platform as platform_module

    info: dict[str, Any] = {
        "version": __version__,
        "python_version": platform_module.python_version(),
        "config_path": str(Path(args.config) if args.config else get_config_path()),
        "statistics": None,
    }

    service = open_service(args)
    try:
        info["statistics"] = service.statistics(args.tenant)
    finally:
        service.close()

    if args.json:
        output_json(info)
        return 0

    stats = info["statistics"]
    output("govflow System Information")
    output("=" * 60)
    output()
    output(f"Version: {info['version']}")
    output(f"Python: {info['python_version']}")
    output(f"Config file: {info['config_path']}")
    output(f"Data directory: {stats['data_dir']}")
    output(f"Attestation signing: {'enabled' if stats['signing_enabled'] else 'checksum only'}")
    output(f"Event sink: {stats['sink'] or 'none'}")
    output()
    output("Tables:")
    for table, count in stats["tables"].items():
        output(f"  {table}: {count:,}")
    if "objects" in stats:
        output()
        output(f"Objects for {args.tenant}:")
        for key, value in stats["objects"].items():
            output(f"  {key}: {value}")
    return 0


def cmd_evidence_upload(args: argparse.Namespace) -> int:
    """Store a file as evidence and optionally link it."""
    path = Path(args.path)
    if not path.is_file():
        output_error(f"Error: File not found: {path}")
        return 1

    metadata = {
        "source": args.source,
        "source_id": args.source_id,
        "title": args.title,
        "note": args.note,
        "tags": args.tag,
        "pii_level": args.pii,
    }
    service = open_service(args)
    try:
        result = service.upload_evidence(
            require_tenant(args),
            resolve_actor(args),
            path,
            args.mime,
            metadata,
            declared_sha256=args.sha256,
            link_kind=args.link_kind,
            link_ref_id=args.link_ref,
        )
    finally:
        service.close()

    if args.json:
        output_json(result.to_dict())
        return 0

    output(f"Record: {result.record.id}")
    output(f"  Object: {result.object.sha256} ({result.object.size_bytes:,} bytes)")
    if result.deduplicated:
        output("  Content already stored; reused existing object")
    if result.link:
        output(f"  Linked to: {result.link.ref}")
    return 0


def cmd_evidence_link(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        link = service.link_evidence(
            require_tenant(args), resolve_actor(args), args.record_id, args.kind, args.ref_id
        )
    finally:
        service.close()
    output(f"Linked {link.record_id} to {link.ref}")
    return 0


def cmd_evidence_list(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        records = service.query_evidence(require_tenant(args), args.kind, args.ref_id)
    finally:
        service.close()

    if args.json:
        output_json([r.to_dict() for r in records])
        return 0

    if not records:
        output("No evidence linked.")
        return 0
    for record in records:
        tags = ", ".join(record.tags) if record.tags else "-"
        output(f"{record.id}  {record.source}:{record.source_id}  {record.title}")
        output(f"  PII: {record.pii_level.value}  Tags: {tags}")
    return 0


def cmd_redaction_set(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        rule = service.upsert_redaction_rule(
            require_tenant(args),
            resolve_actor(args),
            args.code,
            _filters_from_args(args),
            description=args.description,
            enabled=not args.disabled,
        )
    finally:
        service.close()
    output(f"Redaction rule {rule.code} saved ({'enabled' if rule.enabled else 'disabled'})")
    return 0


def cmd_redaction_list(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        rules = service.catalog.list_rules(require_tenant(args))
    finally:
        service.close()

    if args.json:
        output_json([
            {
                "code": r.code,
                "description": r.description,
                "enabled": r.enabled,
                "rule": r.rule.to_dict(),
                "updated_by": r.updated_by,
            }
            for r in rules
        ])
        return 0

    if not rules:
        output("No redaction rules.")
        return 0
    for rule in rules:
        flag = "" if rule.enabled else " (disabled)"
        output(f"{rule.code}{flag}: {json.dumps(rule.rule.to_dict(), sort_keys=True)}")
    return 0


def cmd_manifest_build(args: argparse.Namespace) -> int:
    filters = _filters_from_args(args)
    filters["redaction_rules"] = args.rule

    service = open_service(args)
    try:
        manifest = service.build_manifest(
            require_tenant(args), resolve_actor(args), args.scope_kind, args.scope_id, filters
        )
    finally:
        service.close()

    if args.json:
        output_json(manifest.to_dict())
        return 0

    output(f"Manifest: {manifest.id}")
    output(f"  Objects: {manifest.object_count}  Bytes: {manifest.total_bytes:,}")
    output(f"  SHA-256: {manifest.sha256}")
    return 0


def cmd_manifest_verify(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        ok = service.verify_manifest(require_tenant(args), args.manifest_id)
    finally:
        service.close()
    output(f"Manifest {args.manifest_id}: {'OK' if ok else 'CHECKSUM MISMATCH'}", force=True)
    return 0 if ok else 1


def cmd_binder_build(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        binder = service.build_binder(
            require_tenant(args),
            resolve_actor(args),
            args.manifest_id,
            fmt=args.format,
            idempotency_key=args.idempotency_key,
        )
    finally:
        service.close()

    if args.json:
        output_json(binder.to_dict())
        return 0

    output(f"Binder: {binder.id}")
    output(f"  Format: {binder.format.value}  Size: {binder.size_bytes:,} bytes")
    output(f"  SHA-256: {binder.sha256}")
    output(f"  Stored at: {binder.storage_uri}")
    return 0


def cmd_binder_verify(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        ok = service.verify_binder(require_tenant(args), args.binder_id)
    finally:
        service.close()
    output(f"Binder {args.binder_id}: {'OK' if ok else 'VERIFICATION FAILED'}", force=True)
    return 0 if ok else 1


def cmd_attest_sign(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        attestation = service.sign_attestation(
            require_tenant(args),
            resolve_actor(args),
            args.binder_id,
            args.role,
            args.statement,
            idempotency_key=args.idempotency_key,
        )
    finally:
        service.close()

    if args.json:
        output_json(attestation.to_dict())
        return 0

    output(f"Attestation: {attestation.id}")
    output(f"  SHA-256: {attestation.sha256}")
    if attestation.signature:
        output(f"  Signed with key {attestation.key_fingerprint}")
    else:
        output("  No signing key configured; checksum only")
    return 0


def cmd_attest_verify(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        ok = service.verify_attestation(require_tenant(args), args.attestation_id)
    finally:
        service.close()
    output(f"Attestation {args.attestation_id}: {'OK' if ok else 'VERIFICATION FAILED'}", force=True)
    return 0 if ok else 1


def cmd_attest_keygen(args: argparse.Namespace) -> int:
    from govflow.evidence.attestation import generate_signing_key

    fingerprint = generate_signing_key(Path(args.path))
    output(f"Signing key written to {args.path}")
    output(f"  Fingerprint: {fingerprint}")
    output("Set attestation.signing_key_path in config.yaml to use it.")
    return 0


def cmd_run_create(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        run = service.create_run(
            require_tenant(args),
            resolve_actor(args),
            period=args.period,
            owner=args.owner,
            notes=args.notes,
        )
    finally:
        service.close()

    if args.json:
        output_json(run.to_dict())
        return 0
    _print_run(run)
    return 0


def cmd_run_start(args: argparse.Namespace) -> int:
    assignments: dict[str, Any] = {}
    for value in args.assign:
        code, sep, owner = value.partition("=")
        if not sep or not code or not owner:
            output_error(f"Error: Invalid assignment '{value}', expected CODE=OWNER")
            return 1
        assignments[code] = owner

    tenant_id = require_tenant(args)
    service = open_service(args)
    try:
        run = service.start_run(tenant_id, resolve_actor(args), args.run_id, assignments=assignments)
        items = service.list_work_items(tenant_id, run_id=run.id)
    finally:
        service.close()

    if args.json:
        output_json({"run": run.to_dict(), "items": [i.to_dict() for i in items]})
        return 0
    _print_run(run)
    output(f"  Work items: {len(items)}")
    return 0


def cmd_run_close(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        run = service.close_run(
            require_tenant(args), resolve_actor(args), args.run_id, lock_period=args.lock
        )
    finally:
        service.close()
    _print_run(run)
    if args.lock:
        output(f"  Period {run.period} locked")
    return 0


def cmd_run_publish(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        run = service.publish_run(require_tenant(args), resolve_actor(args), args.run_id)
    finally:
        service.close()
    _print_run(run)
    return 0


def cmd_run_lock(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        lock = service.lock_period(require_tenant(args), resolve_actor(args), args.period)
    finally:
        service.close()
    output(f"Period {lock.period} locked by {lock.locked_by} at {lock.locked_at.isoformat()}")
    return 0


def cmd_run_unlock(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        removed = service.unlock_period(require_tenant(args), resolve_actor(args), args.period)
    finally:
        service.close()
    output(f"Period {args.period} unlocked." if removed else f"Period {args.period} was not locked.")
    return 0


def cmd_run_progress(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        progress = service.run_progress(require_tenant(args), args.run_id)
    finally:
        service.close()

    if args.json:
        output_json(progress.to_dict())
        return 0

    data = progress.to_dict()
    output(f"Run {args.run_id}: {progress.percent_complete:.1f}% complete")
    for key, value in data.items():
        if isinstance(value, dict):
            output(f"  {key}:")
            for name, count in value.items():
                output(f"    {name}: {count}")
    return 0


def cmd_run_list(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        runs = service.list_runs(require_tenant(args))
    finally:
        service.close()

    if args.json:
        output_json([r.to_dict() for r in runs])
        return 0
    if not runs:
        output("No runs.")
        return 0
    for run in runs:
        _print_run(run)
    return 0


def cmd_item_start(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        item = service.start_work_item(require_tenant(args), resolve_actor(args), args.item_id)
    finally:
        service.close()
    _print_item(item)
    return 0


def cmd_item_submit(args: argparse.Namespace) -> int:
    payload = None
    if args.answers:
        try:
            payload = json.loads(args.answers)
        except json.JSONDecodeError as e:
            output_error(f"Error: --answers is not valid JSON: {e}")
            return 1
        if not isinstance(payload, dict):
            output_error("Error: --answers must be a JSON object")
            return 1

    service = open_service(args)
    try:
        item = service.submit_work_item(
            require_tenant(args),
            resolve_actor(args),
            args.item_id,
            payload=payload,
            evidence_record_ids=args.evidence,
        )
    finally:
        service.close()
    _print_item(item)
    return 0


def cmd_item_return(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        item = service.return_work_item(
            require_tenant(args), resolve_actor(args), args.item_id, args.reason
        )
    finally:
        service.close()
    _print_item(item)
    return 0


def cmd_item_approve(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        item = service.approve_work_item(
            require_tenant(args), resolve_actor(args), args.item_id, args.role
        )
    finally:
        service.close()
    _print_item(item)
    return 0


def cmd_item_reject(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        item = service.reject_work_item(
            require_tenant(args), resolve_actor(args), args.item_id, args.role, args.reason
        )
    finally:
        service.close()
    _print_item(item)
    return 0


def cmd_item_complete(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        item = service.complete_work_item(require_tenant(args), resolve_actor(args), args.item_id)
    finally:
        service.close()
    _print_item(item)
    return 0


def cmd_item_list(args: argparse.Namespace) -> int:
    states = [WorkItemState(s) for s in args.state] or None
    service = open_service(args)
    try:
        items = service.list_work_items(require_tenant(args), run_id=args.run_id, states=states)
    finally:
        service.close()

    if args.json:
        output_json([i.to_dict() for i in items])
        return 0
    if not items:
        output("No work items.")
        return 0
    for item in items:
        _print_item(item)
    return 0


def cmd_sla_policy(args: argparse.Namespace) -> int:
    """Show the effective SLA policy, or store one when options are given."""
    options = {
        "tz": args.tz,
        "cutoff_day": args.cutoff_day,
        "grace_hours": args.grace_hours,
        "escal1_hours": args.escal1_hours,
        "escal2_hours": args.escal2_hours,
        "escal_to_lvl1": args.escal_to_lvl1,
        "escal_to_lvl2": args.escal_to_lvl2,
    }
    changes = {k: v for k, v in options.items() if v is not None}

    tenant_id = require_tenant(args)
    service = open_service(args)
    try:
        if changes:
            current = service.get_sla_policy(tenant_id)
            base = current.to_dict() if current else {}
            merged = {k: base[k] for k in options if base.get(k) is not None}
            merged.update(changes)
            policy = service.upsert_sla_policy(tenant_id, resolve_actor(args), **merged)
        else:
            policy = service.get_sla_policy(tenant_id)
    finally:
        service.close()

    if policy is None:
        output("No SLA policy; the SLA clock skips this tenant.")
        return 0
    if args.json:
        output_json(policy.to_dict())
        return 0

    output(f"SLA policy {policy.code} for {tenant_id}")
    output(f"  Time zone: {policy.tz}  Cutoff day: {policy.cutoff_day}")
    output(
        f"  Hours overdue: grace {policy.grace_hours}, "
        f"late after {policy.escal1_hours}, escalated after {policy.escal2_hours}"
    )
    if policy.escal_to_lvl1 or policy.escal_to_lvl2:
        output(f"  Escalate to: {policy.escal_to_lvl1 or '-'} / {policy.escal_to_lvl2 or '-'}")
    return 0


def cmd_sla_tick(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        if args.all_tenants:
            results = service.tick_all_sla()
        else:
            results = [service.tick_sla(require_tenant(args), resolve_actor(args), args.run_id)]
    finally:
        service.close()

    if args.json:
        output_json([r.to_dict() for r in results])
    else:
        for result in results:
            status = "ok" if result.success else f"failed: {result.error}"
            output(
                f"{result.tenant_id}: {result.evaluated} evaluated, "
                f"{len(result.transitions)} transition(s), {status}"
            )
            for transition in result.transitions:
                output(
                    f"  {transition.item_id}: {transition.previous.value} -> "
                    f"{transition.current.value}"
                )
    return 0 if all(r.success for r in results) else 1


def cmd_sla_summary(args: argparse.Namespace) -> int:
    service = open_service(args)
    try:
        summary = service.sla_summary(require_tenant(args), args.run_id)
    finally:
        service.close()

    if args.json:
        output_json(summary.to_dict())
        return 0

    output(f"Open work items: {summary.total}")
    for severity, count in summary.counts.items():
        output(f"  {severity}: {count}")
    output(f"Average aging: {summary.avg_aging_days:.1f} days (max {summary.max_aging_days})")
    return 0


def cmd_sla_daemon(args: argparse.Namespace) -> int:
    """Run the SLA clock on the configured interval."""
    from govflow.scheduler import SlaScheduler
    from govflow.service import GovernanceService

    settings = load_settings(args)
    state_dir = Path(settings.data_dir).expanduser() / "scheduler"
    service = GovernanceService.from_settings(settings)
    scheduler = SlaScheduler(service, settings.scheduler.interval_seconds, state_dir)

    try:
        if args.status:
            status = scheduler.get_status()
            if args.json:
                output_json(status.to_dict())
                return 0
            output("SLA Scheduler Status")
            output("=" * 50)
            output(f"  Interval: {status.interval_seconds}s")
            output(f"  Total runs: {status.total_runs}")
            if status.last_run:
                result = "success" if status.last_run_success else "errors"
                output(f"  Last run: {status.last_run.isoformat()} ({result})")
                output(f"  Transitions: {status.last_run_transitions}")
                for tenant_id, error in (status.last_run_errors or {}).items():
                    output(f"    {tenant_id}: {error}")
            if status.next_run:
                output(f"  Next run: {status.next_run.isoformat()}")
            return 0

        if args.once:
            status = scheduler.run_once()
            output(f"SLA pass complete: {status.last_run_transitions} transition(s)")
            return 0 if status.last_run_success else 1

        output(f"Starting SLA scheduler (every {settings.scheduler.interval_seconds}s)...")
        output("Press Ctrl+C to stop.")
        scheduler.start(foreground=True)
        return 0
    finally:
        service.close()


def main() -> NoReturn:
    """Main entry point for govflow CLI."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except GovflowError as e:
        output_error(f"Error [{e.kind}]: {e}")
        sys.exit(1)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
