#!/usr/bin/env python3
"""
Memory Hall of Shame - App and Stats Collection
Version: 0.2

This module talks to the Cloud Foundry Cloud Controller API to list the apps
visible to the current credential and to fetch per-instance runtime stats for
each of them. Requests go either through the `cf curl` command of a logged-in
CLI session, or directly over HTTPS with a bearer token.
"""

import json
import os
import subprocess
import sys
import threading
from dataclasses import dataclass

import requests
import urllib3

# Default configuration
DEFAULT_TIMEOUT = 60 # Seconds allowed for a single API request
DEFAULT_CF_CLI = "cf"

# Cloud Controller v2 endpoints
APPS_PATH = "/v2/apps"
APP_STATS_PATH = "/v2/apps/{guid}/stats"

RUNNING_STATE = "RUNNING"


class CommandChannelError(Exception):
    """Raised when a request through a command channel fails.

    Any output produced before the failure is kept on ``output`` so callers
    can still attempt to parse it.
    """

    def __init__(self, message, output=None):
        super().__init__(message)
        self.output = list(output or [])


class StatsFetchError(Exception):
    """Raised when the stats of a single app cannot be fetched or parsed."""


class WorkloadListingError(Exception):
    """Raised when the app list cannot be retrieved in strict mode."""


@dataclass(frozen=True)
class WorkloadDescriptor:
    guid: str
    name: str
    space_guid: str
    instances: int


@dataclass(frozen=True)
class InstanceRuntimeStat:
    state: str
    mem_quota: int # bytes
    mem_usage: int # bytes


def cf_executable():
    """Name or path of the cf CLI binary (overridable with CF_CLI)."""
    return os.environ.get("CF_CLI", DEFAULT_CF_CLI)


class CfCliChannel:
    """Issues API requests through `cf curl`, reusing the CLI's login session"""

    def __init__(self, timeout=DEFAULT_TIMEOUT, executable=None):
        self.timeout = timeout
        self.executable = executable or cf_executable()

    def curl(self, path):
        """
        Run `cf curl <path>` and return its output lines

        Args:
            path (str): API path, e.g. /v2/apps

        Returns:
            list: Lines printed by the command
        """
        cmd = [self.executable, "curl", path]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise CommandChannelError(
                f"'{self.executable}' command not found. Please install the Cloud Foundry CLI."
            ) from e
        except subprocess.TimeoutExpired as e:
            raise CommandChannelError(f"'cf curl {path}' timed out after {self.timeout}s") from e

        output = result.stdout.splitlines()
        if result.returncode != 0:
            raise CommandChannelError(
                f"'cf curl {path}' failed: {result.stderr.strip()}",
                output=output
            )
        return output


class ApiChannel:
    """Client for issuing GET requests directly against the Cloud Controller API"""

    def __init__(self, api_url, token, verify_ssl=False, timeout=DEFAULT_TIMEOUT):
        """
        Initialize the API channel

        Args:
            api_url (str): Base URL of the Cloud Controller API
            token (str): OAuth token, with or without the "bearer " prefix
            verify_ssl (bool): Whether to verify SSL certificates
            timeout (float): Seconds allowed per request
        """
        self.api_url = api_url.rstrip('/')
        self.verify_ssl = verify_ssl
        self.timeout = timeout

        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        if not token.lower().startswith("bearer "):
            token = f"bearer {token}"

        self.headers = {
            "Authorization": token,
            "Accept": "application/json"
        }
        self._local = threading.local()

    @property
    def session(self):
        """requests.Session owned by the calling thread."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self.headers)
            self._local.session = session
        return session

    def curl(self, path):
        """
        GET an API path and return the response body split into lines

        Args:
            path (str): API path, e.g. /v2/apps

        Returns:
            list: Lines of the response body
        """
        response = None
        try:
            response = self.session.get(
                f"{self.api_url}{path}",
                verify=self.verify_ssl,
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            output = response.text.splitlines() if response is not None else []
            raise CommandChannelError(f"GET {path} failed: {e}", output=output) from e
        return response.text.splitlines()


def detect_api_url():
    """Read the targeted API endpoint from the cf CLI config file"""
    cf_home = os.environ.get("CF_HOME") or os.path.expanduser("~")
    config_path = os.path.join(cf_home, ".cf", "config.json")
    try:
        with open(config_path, "r") as f:
            config = json.load(f)
    except FileNotFoundError:
        print(f"Warning: cf config not found at {config_path}. Run 'cf login' first.", file=sys.stderr)
        return None
    except json.JSONDecodeError:
        print(f"Warning: Could not parse cf config at {config_path}.", file=sys.stderr)
        return None

    target = config.get("Target") if isinstance(config, dict) else None
    if not target:
        print("Warning: No API endpoint targeted. Run 'cf api <url>' first.", file=sys.stderr)
        return None
    return target


def get_oauth_token(timeout=DEFAULT_TIMEOUT):
    """Ask the cf CLI for a fresh OAuth token"""
    executable = cf_executable()
    try:
        result = subprocess.run(
            [executable, "oauth-token"],
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except FileNotFoundError:
        print(f"Warning: '{executable}' command not found. Cannot retrieve an OAuth token.", file=sys.stderr)
        return None
    except subprocess.TimeoutExpired:
        print(f"Warning: '{executable} oauth-token' timed out after {timeout}s.", file=sys.stderr)
        return None

    token = result.stdout.strip()
    if result.returncode != 0 or not token:
        print(f"Warning: '{executable} oauth-token' failed: {result.stderr.strip()}", file=sys.stderr)
        return None
    return token


# Helpers for tolerating missing or mistyped fields
def _as_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_str(value):
    return "" if value is None else str(value)


def parse_workload(resource):
    """Build a WorkloadDescriptor from one /v2/apps resource, zero-filling gaps."""
    metadata = resource.get("metadata") or {}
    entity = resource.get("entity") or {}
    return WorkloadDescriptor(
        guid=_as_str(metadata.get("guid")),
        name=_as_str(entity.get("name")),
        space_guid=_as_str(entity.get("space_guid")),
        instances=_as_int(entity.get("instances")),
    )


def parse_instance_stat(entry):
    stats = entry.get("stats") or {}
    usage = stats.get("usage") or {}
    return InstanceRuntimeStat(
        state=_as_str(entry.get("state")),
        mem_quota=_as_int(stats.get("mem_quota")),
        mem_usage=_as_int(usage.get("mem")),
    )


def _fetch_apps_page(channel, path, strict):
    try:
        output = channel.curl(path)
    except CommandChannelError as e:
        if strict:
            raise WorkloadListingError(f"Failed to list apps: {e}") from e
        print(f"Warning: Listing apps failed ({e}). Parsing whatever output was returned.", file=sys.stderr)
        output = e.output

    # cf curl may split one JSON document over many lines
    body = "".join(output)
    try:
        page = json.loads(body)
    except json.JSONDecodeError as e:
        if strict:
            raise WorkloadListingError(f"Could not parse app list from {path}: {e}") from e
        print(f"Warning: Could not parse app list from {path}: {e}", file=sys.stderr)
        return {}

    if not isinstance(page, dict):
        if strict:
            raise WorkloadListingError(f"Unexpected app list payload from {path}")
        print(f"Warning: Unexpected app list payload from {path}", file=sys.stderr)
        return {}
    return page


def list_workloads(channel, strict=False, all_pages=False):
    """
    List the apps visible to the current credential

    Args:
        channel: Command channel exposing curl(path)
        strict (bool): Raise WorkloadListingError instead of degrading to a
            partial or empty list
        all_pages (bool): Follow next_url instead of reading only the first page

    Returns:
        list: WorkloadDescriptor entries
    """
    workloads = []
    seen = set()
    path = APPS_PATH

    while path and path not in seen:
        seen.add(path)
        page = _fetch_apps_page(channel, path, strict)

        resources = page.get("resources") or []
        if not isinstance(resources, list):
            print(f"Warning: 'resources' in {path} is not a list. Ignoring it.", file=sys.stderr)
            resources = []

        for resource in resources:
            if not isinstance(resource, dict):
                print(f"Warning: Skipping malformed app entry: {resource!r}", file=sys.stderr)
                continue
            workloads.append(parse_workload(resource))

        path = page.get("next_url") if all_pages else None

    return workloads


def fetch_stats(channel, guid):
    """
    Fetch per-instance runtime stats for one app

    Args:
        channel: Command channel exposing curl(path)
        guid (str): App GUID

    Returns:
        dict: Instance index ("0", "1", ...) to InstanceRuntimeStat

    Raises:
        StatsFetchError: On transport failure or an unexpected payload
    """
    path = APP_STATS_PATH.format(guid=guid)
    try:
        output = channel.curl(path)
    except CommandChannelError as e:
        raise StatsFetchError(f"Failed to fetch stats for app {guid}: {e}") from e

    try:
        payload = json.loads("".join(output))
    except json.JSONDecodeError as e:
        raise StatsFetchError(f"Could not parse stats for app {guid}: {e}") from e

    if not isinstance(payload, dict):
        raise StatsFetchError(f"Unexpected stats payload for app {guid}")

    stats = {}
    for index, entry in payload.items():
        # Error documents (e.g. stopped apps) carry scalars instead of instances
        if not isinstance(entry, dict):
            detail = payload.get("description") or payload.get("error_code") or "not an instance map"
            raise StatsFetchError(f"Unexpected stats payload for app {guid}: {detail}")
        stats[str(index)] = parse_instance_stat(entry)
    return stats
