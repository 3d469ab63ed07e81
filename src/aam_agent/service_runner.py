from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Event
from typing import TextIO

from aam_agent.config import AppConfig
from aam_agent.cursor_store import CursorStore
from aam_agent.gateway import AamGateway
from aam_agent.handlers import JsonLinesRelay, build_relay_handlers
from aam_agent.observability import log_event
from aam_agent.poller import ActivityPoller, PollingContext
from aam_agent.process_lock import writer_process_lock
from aam_agent.processor import ActivityHandler, ActivityProcessor, SeenSet
from aam_agent.resolver import Resolver
from aam_agent.resources import ResourceFetcher
from aam_agent.retry import RetryPolicy
from aam_agent.state import StateStore
from aam_agent.transport import Transport


LOGGER = logging.getLogger("aam_agent.service_runner")


@dataclass(frozen=True)
class AgentRuntime:
    config: AppConfig
    state: StateStore
    transport: Transport
    gateway: AamGateway
    cursor_store: CursorStore
    fetcher: ResourceFetcher
    resolver: Resolver
    stop_event: Event

    def close(self) -> None:
        self.transport.close()


def build_runtime(
    config: AppConfig,
    *,
    stop_event: Event | None = None,
    transport: Transport | None = None,
) -> AgentRuntime:
    agent = config.agent
    stop = stop_event or Event()
    state = StateStore(config.state_db_path)
    transport = transport or Transport(
        base_url=agent.api_base,
        api_key=agent.api_key,
        timeout_seconds=agent.request_timeout_seconds,
        verify_tls=agent.verify_tls,
    )
    gateway = AamGateway(
        transport=transport,
        retry=RetryPolicy.from_config(config.retry),
        write_retry=RetryPolicy.from_config(config.retry, for_writes=True),
        stop_event=stop,
    )
    return AgentRuntime(
        config=config,
        state=state,
        transport=transport,
        gateway=gateway,
        cursor_store=CursorStore(state, fallback_since=agent.fallback_since),
        fetcher=ResourceFetcher(gateway),
        resolver=Resolver(gateway, state=state),
        stop_event=stop,
    )


def build_poller(
    runtime: AgentRuntime,
    *,
    handlers: dict[str, ActivityHandler],
) -> ActivityPoller:
    config = runtime.config
    capacity = config.processor.seen_capacity
    seen = SeenSet(capacity, initial=runtime.state.recent_processed_ids(capacity))
    processor = ActivityProcessor(
        handlers,
        seen=seen,
        state=runtime.state,
        on_handler_error=config.processor.on_handler_error,
        skip_agent_authored=config.processor.skip_agent_authored,
    )
    return ActivityPoller(
        PollingContext(
            gateway=runtime.gateway,
            cursor_store=runtime.cursor_store,
            processor=processor,
            api_key=config.agent.api_key,
            state=runtime.state,
            expected_project_id=config.agent.expected_project_id,
            strict_key_format=config.agent.strict_key_format,
            page_limit=config.agent.page_limit,
            poll_interval_seconds=float(config.agent.poll_interval_seconds),
            max_pages_per_cycle=config.agent.max_pages_per_cycle,
            stop_event=runtime.stop_event,
        )
    )


def run_service(
    *,
    config: AppConfig,
    once: bool,
    sink: TextIO,
    stop_event: Event | None = None,
    runtime: AgentRuntime | None = None,
) -> None:
    """Poll the activity stream and relay activities to `sink` as JSON lines."""
    runtime = runtime or build_runtime(config, stop_event=stop_event)
    try:
        with writer_process_lock(state_dir=config.agent.state_dir, command="run"):
            relay = JsonLinesRelay(sink, fetcher=runtime.fetcher)
            poller = build_poller(runtime, handlers=build_relay_handlers(relay))
            try:
                poller.run(once=once)
            finally:
                pruned = runtime.state.prune_processed(keep=config.processor.seen_capacity)
                log_event(LOGGER, "processed_ledger_pruned", removed=pruned)
    finally:
        runtime.close()
