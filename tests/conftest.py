"""Pytest configuration and fixtures for the hall-of-shame tests."""

import json
import threading
import time

import pytest

from collect_stats import CommandChannelError


# =============================================================================
# PAYLOAD BUILDERS
# =============================================================================

def app_resource(guid, name, space_guid="space-1", instances=1):
    return {
        "metadata": {"guid": guid, "url": f"/v2/apps/{guid}"},
        "entity": {"name": name, "instances": instances, "space_guid": space_guid},
    }


def apps_page(*resources, next_url=None):
    return {
        "total_results": len(resources),
        "next_url": next_url,
        "resources": list(resources),
    }


def instance_stat(mem_usage, mem_quota=1024, state="RUNNING"):
    return {
        "state": state,
        "isolation_segment": None,
        "stats": {
            "name": "app",
            "mem_quota": mem_quota,
            "disk_quota": 1073741824,
            "usage": {"time": "2024-01-01T00:00:00+00:00", "cpu": 0.01, "mem": mem_usage, "disk": 0},
        },
    }


def stats_payload(usages, mem_quota=1024, state="RUNNING"):
    """Instance map keyed "0", "1", ... with the first instance in ``state``."""
    payload = {}
    for index, usage in enumerate(usages):
        payload[str(index)] = instance_stat(usage, mem_quota, state if index == 0 else "RUNNING")
    return payload


def as_lines(document):
    """Pretty-printed JSON split into lines, the way `cf curl` emits it."""
    return json.dumps(document, indent=2).splitlines()


# =============================================================================
# FAKE CHANNEL
# =============================================================================

class FakeChannel:
    """In-memory command channel that records calls and in-flight requests."""

    def __init__(self, responses=None, delay=0.0):
        self.responses = dict(responses or {})
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def curl(self, path):
        with self._lock:
            self.calls.append(path)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            response = self.responses.get(path)
            if response is None:
                raise CommandChannelError(f"no response for {path}")
            if isinstance(response, Exception):
                raise response
            if isinstance(response, list):
                return list(response)
            return as_lines(response)
        finally:
            with self._lock:
                self.in_flight -= 1


class RecordingProgress:
    def __init__(self):
        self.total = None
        self.increments = 0
        self.finished_with = None

    def start(self, total):
        self.total = total

    def increment(self):
        self.increments += 1

    def finish(self, message):
        self.finished_with = message


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def progress():
    return RecordingProgress()
