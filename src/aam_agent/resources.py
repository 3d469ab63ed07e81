from __future__ import annotations

import logging

from aam_agent.gateway import AamGateway
from aam_agent.models import Activity, Issue, PromptContext
from aam_agent.observability import log_event


LOGGER = logging.getLogger("aam_agent.resources")


class ResourceFetcher:
    """On-demand reads for a single issue. Nothing is cached between calls."""

    def __init__(self, gateway: AamGateway) -> None:
        self._gateway = gateway

    def issue(self, issue_id: str) -> Issue:
        issue = self._gateway.get_issue(issue_id)
        log_event(LOGGER, "resource_fetched", resource="issue", issue_id=issue_id)
        return issue

    def issue_activities(self, issue_id: str) -> tuple[Activity, ...]:
        activities = self._gateway.list_issue_activities(issue_id)
        log_event(
            LOGGER,
            "resource_fetched",
            resource="issue_activities",
            issue_id=issue_id,
            count=len(activities),
        )
        return activities

    def prompt(self, issue_id: str) -> PromptContext:
        prompt = self._gateway.get_issue_prompt(issue_id)
        log_event(LOGGER, "resource_fetched", resource="prompt", issue_id=issue_id)
        return prompt

    def image(self, issue_id: str, image_id: str) -> bytes:
        data = self._gateway.get_issue_image(issue_id, image_id)
        log_event(
            LOGGER,
            "resource_fetched",
            resource="image",
            issue_id=issue_id,
            image_id=image_id,
            size_bytes=len(data),
        )
        return data
