import json
from typing import Any, Generator

import requests

DEFAULT_SERVER_URL = "http://localhost:8000"


def _error_message(response: requests.Response) -> str:
    """Prefer the server's own error message over the bare HTTP status."""
    try:
        payload = response.json()
    except ValueError:
        return f"{response.status_code} {response.reason}"
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("detail")
        if message:
            return f"{response.status_code}: {message}"
    return f"{response.status_code} {response.reason}"


def _request(
    method: str, url: str, timeout: float = 30, **kwargs: Any
) -> Any:
    try:
        response = requests.request(method, url, timeout=timeout, **kwargs)
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error contacting workload server: {e}")

    if not response.ok:
        raise RuntimeError(f"Workload server error: {_error_message(response)}")
    return response.json()


def start_workload(
    workload_id: str,
    repo_url: str | None = None,
    server_url: str = DEFAULT_SERVER_URL,
) -> dict[str, Any]:
    """
    Start a workload and wait until it is running.

    Args:
        workload_id: ID of the workload to start
        repo_url: Repository to clone (default: the workload's recorded URL)
        server_url: Base URL of the workload server

    Returns:
        The workload's runtime status

    Raises:
        RuntimeError: If the request fails or the server reports an error

    Cloning and building can take minutes, hence the long timeout.
    """
    body = {"repo_url": repo_url} if repo_url else {}
    return _request(
        "POST", f"{server_url}/workloads/{workload_id}/start", json=body, timeout=600
    )


def stop_workload(workload_id: str, server_url: str = DEFAULT_SERVER_URL) -> dict[str, Any]:
    """Gracefully stop a running workload."""
    return _request("POST", f"{server_url}/workloads/{workload_id}/stop", timeout=60)


def restart_workload(
    workload_id: str, server_url: str = DEFAULT_SERVER_URL
) -> dict[str, Any]:
    return _request("POST", f"{server_url}/workloads/{workload_id}/restart", timeout=600)


def get_status(workload_id: str, server_url: str = DEFAULT_SERVER_URL) -> dict[str, Any]:
    return _request("GET", f"{server_url}/workloads/{workload_id}/status")


def get_logs(workload_id: str, server_url: str = DEFAULT_SERVER_URL) -> list[dict[str, Any]]:
    return _request("GET", f"{server_url}/workloads/{workload_id}/logs")


def list_workloads(
    server_url: str = DEFAULT_SERVER_URL, deployment_id: str | None = None
) -> list[dict[str, Any]]:
    """
    List all workloads on the server.

    Returns:
        Workload summaries with id, deployment_id, status, current_stage,
        port and updated_at
    """
    params = {"deployment_id": deployment_id} if deployment_id else {}
    return _request("GET", f"{server_url}/workloads", params=params)


def watch_events(
    server_url: str = DEFAULT_SERVER_URL, deployment_id: str | None = None
) -> Generator[dict, None, None]:
    """
    Follow the server's event stream.

    Yields:
        dict: Event dictionaries with a 'type' field:
            - {"type": "workload-update", ...} - A workload changed stage or logged
            - {"type": "deployment-deleted", ...} - A deployment was removed

    Runs until the server closes the stream or the caller stops iterating.
    Comment lines (keepalives) are skipped.

    Raises:
        RuntimeError: If the stream cannot be opened or breaks
    """
    params = {"deployment_id": deployment_id} if deployment_id else {}
    try:
        response = requests.get(
            f"{server_url}/events", params=params, stream=True, timeout=(10, None)
        )
        response.raise_for_status()

        # Parse SSE format: "data: {...}\n\n"
        for line in response.iter_lines(decode_unicode=True):
            if line and line.startswith("data: "):
                yield json.loads(line[6:])
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error watching workload server: {e}")
