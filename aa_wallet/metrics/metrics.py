import logging
from prometheus_client import Counter, Summary, start_http_server

RPC_REQUEST_TIME = Summary(
    "aa_wallet_rpc_request_seconds",
    "Time spent on outgoing json-rpc requests",
    ["service", "method"],
)
RPC_REQUEST_ERRORS = Counter(
    "aa_wallet_rpc_request_errors",
    "Number of failed outgoing json-rpc requests",
    ["service", "method", "kind"],
)


def observe_rpc_request(service: str, method: str, seconds: float) -> None:
    RPC_REQUEST_TIME.labels(service=service, method=method).observe(seconds)


def count_rpc_error(service: str, method: str, kind: str) -> None:
    RPC_REQUEST_ERRORS.labels(service=service, method=method, kind=kind).inc()


def run_metrics_server(host="localhost", port=8000):
    """
    run prometheus metrics server
    """
    logging.info(f"Starting Metrics Http Server at: {host}:{port}")
    start_http_server(port, addr=host)
