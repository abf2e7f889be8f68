"""Entry point for launching the read-only API server."""

from __future__ import annotations

import argparse

import uvicorn

from ..config.settings import get_app_config
from ..main import build_services
from ..monitoring import bootstrap_observability
from .app import create_dashboard_app
from .state import DashboardState


def main() -> None:
    parser = argparse.ArgumentParser(description="Serve the DAMM v2 P&L read-only API")
    parser.add_argument("--host", help="Override dashboard host")
    parser.add_argument("--port", type=int, help="Override dashboard port")
    args = parser.parse_args()

    config = get_app_config()
    bootstrap_observability(config)
    services = build_services(config)
    state = DashboardState(
        config=config,
        tracker=services.tracker,
        source=services.source,
        scanner=services.scanner,
    )
    app = create_dashboard_app(state)
    host = args.host or config.dashboard.host
    port = args.port or config.dashboard.port
    uvicorn.run(app, host=host, port=port, log_level=config.monitoring.log_level.lower())


if __name__ == "__main__":
    main()
