"""
callshield CLI.

Device-side commands:
  - hash: print the keyed hash of a number
  - screen: run the screening pipeline for an incoming number
  - whitelist / blocklist / prefix: manage the local lists
  - history: show recent screening decisions
  - purge-events: drop behavioral events past their retention window
  - seed-update: refresh the local seed spam database
  - report / not-spam: send a report or correction to the backend

Backend commands:
  - serve: run the reputation API
  - harden: run the abuse hardening pass
  - resolve-flags / review-quarantine: close reviews for a number
  - publish-seed: register a CSV file as the current seed database
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any

import click

from callshield import __version__
from callshield.backend.aggregation import VALID_CATEGORIES, ReputationAggregationService
from callshield.backend.errors import CallShieldError
from callshield.backend.hardening import AbuseHardeningService
from callshield.backend.seed import SeedDbService
from callshield.backend.store import BackendStore
from callshield.config import CallShieldSettings, load_settings
from callshield.core.identity import mask_number
from callshield.logging_config import configure_logging
from callshield.net.api import ReputationApiClient
from callshield.net.circuit_breaker import CircuitBreaker
from callshield.net.http import build_async_client
from callshield.reputation.adapter import BackendReputationAdapter
from callshield.reputation.repository import ReputationRepository
from callshield.screening.behavioral import BehavioralAnalyzer, RingTimeRegistry
from callshield.screening.decision import decision_to_dict
from callshield.screening.orchestrator import ScreeningOrchestrator
from callshield.screening.policy import AdvancedBlockingEvaluator
from callshield.screening.service import CallRecorder, CallScreeningService
from callshield.seeddb.updater import Failed, SeedDbUpdater
from callshield.storage.device import (
    CallerEventRepository,
    CallHistoryRepository,
    DeviceDatabase,
    NumberListRepository,
    PrefixRuleRepository,
    SeedDbRepository,
)

logger = logging.getLogger(__name__)

_CONFIG_OPTION = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML config path.",
)


def _setup(config_path: Path | None) -> CallShieldSettings:
    try:
        settings = load_settings(yaml_path=config_path)
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e
    configure_logging(level=settings.log_level, json_logging=settings.json_logging)
    return settings


def _require_hash(settings: CallShieldSettings, number: str) -> str:
    number_hash = settings.number_hasher().hash(number)
    if number_hash is None:
        raise click.ClickException(f"Not a valid phone number: {mask_number(number)}")
    return number_hash


async def screen_async(
    number: str | None,
    *,
    settings: CallShieldSettings,
    offline: bool,
    ended_after: float | None = None,
) -> dict[str, Any]:
    db = DeviceDatabase(settings.device_db_path)
    hasher = settings.number_hasher()
    whitelist = NumberListRepository(db, "whitelist")
    blocklist = NumberListRepository(db, "blocklist")
    history = CallHistoryRepository(db)
    events = CallerEventRepository(db)
    http_config = settings.http_config()

    async with build_async_client(http_config, base_url=settings.api_base_url) as client:
        remote = None
        if not offline:
            remote = BackendReputationAdapter(
                ReputationApiClient(client, http_config=http_config),
                device_token_hash=settings.device_token_hash(),
            )
        reputation = ReputationRepository(
            seed_db=SeedDbRepository(db),
            remote=remote,
            circuit_breaker=CircuitBreaker(
                window_size=settings.circuit_window_size,
                failure_threshold=settings.circuit_failure_threshold,
                reopen_after_seconds=settings.circuit_reopen_after_seconds,
            ),
            remote_timeout_seconds=settings.remote_lookup_timeout_seconds,
        )
        orchestrator = ScreeningOrchestrator(
            hasher=hasher,
            whitelist=whitelist,
            blocklist=blocklist,
            prefix_rules=PrefixRuleRepository(db),
            reputation=reputation,
            behavioral=BehavioralAnalyzer(events),
            advanced=AdvancedBlockingEvaluator(
                history=history, home_calling_code=settings.home_calling_code
            ),
            settings_provider=settings.screening_settings,
        )
        service = CallScreeningService(
            orchestrator,
            recorder=CallRecorder(
                hasher=hasher,
                history=history,
                events=events,
                blocklist=blocklist,
                settings_provider=settings.screening_settings,
            ),
            ring_registry=RingTimeRegistry(events),
            hasher=hasher,
            deadline_seconds=settings.screening_deadline_seconds,
        )
        decision, response = await service.screen(number)
        await service.drain()
        ended = None
        if ended_after is not None:
            await asyncio.sleep(ended_after)
            ended = await service.call_ended()

    result: dict[str, Any] = {
        "caller": mask_number(number),
        "decision": decision_to_dict(decision),
        "reason": decision.source.display_label,
        "response": {
            "disallow_call": response.disallow_call,
            "reject_call": response.reject_call,
            "skip_call_log": response.skip_call_log,
        },
    }
    if ended is not None:
        result["short_ring"] = ended[1]
    return result


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__)
def main() -> None:
    """Call screening and crowd-sourced number reputation."""


@main.command("hash")
@click.argument("number", type=str)
@_CONFIG_OPTION
def hash_cmd(number: str, config_path: Path | None) -> None:
    """Print the E.164 form's keyed hash for NUMBER."""

    settings = _setup(config_path)
    click.echo(_require_hash(settings, number))


@main.command("screen")
@click.argument("number", type=str, required=False)
@click.option("--offline", is_flag=True, help="Skip the remote reputation lookup.")
@click.option(
    "--ended-after",
    type=click.FloatRange(min=0),
    default=None,
    metavar="SECONDS",
    help="Hang up SECONDS after ringing; short rings are remembered for the caller.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the decision as JSON.")
@_CONFIG_OPTION
def screen_cmd(
    number: str | None,
    offline: bool,
    ended_after: float | None,
    as_json: bool,
    config_path: Path | None,
) -> None:
    """Screen an incoming call from NUMBER (omit NUMBER for a hidden caller)."""

    settings = _setup(config_path)
    result = asyncio.run(
        screen_async(number, settings=settings, offline=offline, ended_after=ended_after)
    )
    if as_json:
        click.echo(json.dumps(result, indent=2, sort_keys=True))
        return
    d = result["decision"]
    click.echo(f"{result['caller']}: {d['outcome']} ({result['reason']})")
    if d["category"]:
        click.echo(f"  category: {d['category']}  score: {d['confidence_score']:.2f}")
    if result.get("short_ring"):
        click.echo("  short ring recorded")


def _list_group(name: str) -> click.Group:
    @click.group(name)
    def group() -> None:
        pass

    group.help = f"Manage the {name}."

    @group.command("add")
    @click.argument("number", type=str)
    @_CONFIG_OPTION
    def add_cmd(number: str, config_path: Path | None) -> None:
        settings = _setup(config_path)
        repo = NumberListRepository(DeviceDatabase(settings.device_db_path), name)  # type: ignore[arg-type]
        repo.add(_require_hash(settings, number), mask_number(number))
        click.echo(f"added {mask_number(number)} to {name}")

    @group.command("remove")
    @click.argument("number", type=str)
    @_CONFIG_OPTION
    def remove_cmd(number: str, config_path: Path | None) -> None:
        settings = _setup(config_path)
        repo = NumberListRepository(DeviceDatabase(settings.device_db_path), name)  # type: ignore[arg-type]
        if not repo.remove(_require_hash(settings, number)):
            raise click.ClickException(f"{mask_number(number)} is not in the {name}")
        click.echo(f"removed {mask_number(number)} from {name}")

    @group.command("list")
    @_CONFIG_OPTION
    def list_cmd(config_path: Path | None) -> None:
        settings = _setup(config_path)
        repo = NumberListRepository(DeviceDatabase(settings.device_db_path), name)  # type: ignore[arg-type]
        for entry in repo.list_all():
            click.echo(f"{entry.display_label}\t{entry.number_hash[:12]}")

    return group


main.add_command(_list_group("whitelist"))
main.add_command(_list_group("blocklist"))


@main.group("prefix")
def prefix_group() -> None:
    """Manage prefix rules (longest matching prefix wins)."""


@prefix_group.command("add")
@click.argument("prefix", type=str)
@click.argument("action", type=click.Choice(["block", "silence", "allow"]))
@click.option("--label", default="", help="Free-text label.")
@_CONFIG_OPTION
def prefix_add_cmd(prefix: str, action: str, label: str, config_path: Path | None) -> None:
    settings = _setup(config_path)
    repo = PrefixRuleRepository(DeviceDatabase(settings.device_db_path))
    try:
        repo.add(prefix, action, label)  # type: ignore[arg-type]
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{prefix} -> {action}")


@prefix_group.command("remove")
@click.argument("prefix", type=str)
@_CONFIG_OPTION
def prefix_remove_cmd(prefix: str, config_path: Path | None) -> None:
    settings = _setup(config_path)
    if not PrefixRuleRepository(DeviceDatabase(settings.device_db_path)).remove(prefix):
        raise click.ClickException(f"No rule for {prefix}")
    click.echo(f"removed {prefix}")


@prefix_group.command("list")
@_CONFIG_OPTION
def prefix_list_cmd(config_path: Path | None) -> None:
    settings = _setup(config_path)
    for rule in PrefixRuleRepository(DeviceDatabase(settings.device_db_path)).list_all():
        click.echo(f"{rule.prefix}\t{rule.action}\t{rule.label}")


@main.command("history")
@click.option("--limit", default=20, show_default=True, type=int)
@click.option("--json", "as_json", is_flag=True)
@_CONFIG_OPTION
def history_cmd(limit: int, as_json: bool, config_path: Path | None) -> None:
    """Show recent screening decisions."""

    settings = _setup(config_path)
    repo = CallHistoryRepository(DeviceDatabase(settings.device_db_path))
    records = repo.recent(limit)
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return
    stats = repo.stats()
    click.echo(f"screened: {stats.total_screened}  blocked: {stats.total_blocked}")
    for r in records:
        category = f" [{r.category}]" if r.category else ""
        click.echo(f"{r.display_label}\t{r.outcome}\t{r.decision_source}{category}")


@main.command("purge-events")
@_CONFIG_OPTION
def purge_events_cmd(config_path: Path | None) -> None:
    """Delete behavioral events older than the retention window."""

    settings = _setup(config_path)
    repo = CallerEventRepository(DeviceDatabase(settings.device_db_path))
    removed = repo.purge_expired(now=time.time())
    click.echo(f"purged {removed} caller events")


async def _seed_update_async(settings: CallShieldSettings) -> Any:
    http_config = settings.http_config()
    db = DeviceDatabase(settings.device_db_path)
    async with build_async_client(http_config, base_url=settings.api_base_url) as client:
        updater = SeedDbUpdater(
            ReputationApiClient(client, http_config=http_config),
            SeedDbRepository(db),
            device_token_hash=settings.device_token_hash(),
            work_dir=settings.device_db_path.parent,
        )
        return await updater.run_with_retries(settings.seed_update_max_attempts)


@main.command("seed-update")
@_CONFIG_OPTION
def seed_update_cmd(config_path: Path | None) -> None:
    """Download the seed spam database if a newer version exists."""

    settings = _setup(config_path)
    result = asyncio.run(_seed_update_async(settings))
    click.echo(repr(result))
    if isinstance(result, Failed):
        raise SystemExit(1)


async def _send_async(settings: CallShieldSettings, number_hash: str, category: str | None) -> Any:
    http_config = settings.http_config()
    async with build_async_client(http_config, base_url=settings.api_base_url) as client:
        api = ReputationApiClient(client, http_config=http_config)
        token = settings.device_token_hash()
        if category is None:
            return await api.post_correction(number_hash, device_token_hash=token)
        return await api.post_report(number_hash, device_token_hash=token, category=category)


@main.command("report")
@click.argument("number", type=str)
@click.option(
    "--category",
    type=click.Choice(VALID_CATEGORIES),
    default="other",
    show_default=True,
)
@_CONFIG_OPTION
def report_cmd(number: str, category: str, config_path: Path | None) -> None:
    """Report NUMBER as spam."""

    settings = _setup(config_path)
    try:
        result = asyncio.run(_send_async(settings, _require_hash(settings, number), category))
    except Exception as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc
    click.echo(json.dumps(result, sort_keys=True))


@main.command("not-spam")
@click.argument("number", type=str)
@_CONFIG_OPTION
def not_spam_cmd(number: str, config_path: Path | None) -> None:
    """Tell the backend that NUMBER is not spam."""

    settings = _setup(config_path)
    try:
        result = asyncio.run(_send_async(settings, _require_hash(settings, number), None))
    except Exception as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc
    click.echo(json.dumps(result, sort_keys=True))


@main.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@_CONFIG_OPTION
def serve_cmd(host: str, port: int, config_path: Path | None) -> None:
    """Run the reputation backend."""

    import uvicorn

    from callshield.backend.app import create_app

    settings = _setup(config_path)
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


def _backend_store(settings: CallShieldSettings) -> BackendStore:
    return BackendStore(settings.backend_db_path)


@main.command("harden")
@_CONFIG_OPTION
def harden_cmd(config_path: Path | None) -> None:
    """Run the abuse hardening pass once."""

    settings = _setup(config_path)
    summary = AbuseHardeningService(_backend_store(settings)).run()
    click.echo(json.dumps(summary.to_dict()))


@main.command("resolve-flags")
@click.argument("number_hash", type=str)
@_CONFIG_OPTION
def resolve_flags_cmd(number_hash: str, config_path: Path | None) -> None:
    """Resolve open abuse flags for NUMBER_HASH."""

    settings = _setup(config_path)
    try:
        resolved = AbuseHardeningService(_backend_store(settings)).resolve_flags(number_hash)
    except CallShieldError as exc:
        raise click.ClickException(exc.message) from exc
    click.echo(f"resolved {resolved} flag(s)")


@main.command("review-quarantine")
@click.argument("number_hash", type=str)
@_CONFIG_OPTION
def review_quarantine_cmd(number_hash: str, config_path: Path | None) -> None:
    """Mark the quarantine of NUMBER_HASH reviewed and lift the score cap."""

    settings = _setup(config_path)
    try:
        score = ReputationAggregationService(_backend_store(settings)).review_quarantine(number_hash)
    except CallShieldError as exc:
        raise click.ClickException(exc.message) from exc
    click.echo(f"confidence_score={score:.3f}")


@main.command("publish-seed")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--version", "version", type=int, default=None, help="Explicit version number.")
@_CONFIG_OPTION
def publish_seed_cmd(csv_path: Path, version: int | None, config_path: Path | None) -> None:
    """Publish CSV_PATH as the current seed spam database."""

    settings = _setup(config_path)
    service = SeedDbService(
        _backend_store(settings),
        signing_secret=settings.download_signing_secret,
        public_base_url=settings.public_base_url,
        url_ttl_seconds=settings.download_url_ttl_seconds,
    )
    try:
        published = service.publish(csv_path, version=version)
    except CallShieldError as exc:
        raise click.ClickException(exc.message) from exc
    click.echo(json.dumps(published))


if __name__ == "__main__":  # pragma: no cover
    main()
