import argparse
import logging

from icecream import ic

from core.abstract import App
from core.config import get_settings


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Roast Live Battles - battle engine server")

    parser.add_argument(
        "--mode",
        "-m",
        choices=["server", "schema"],
        default="server",
        help="Run mode: 'server' serves the API, 'schema' creates the database tables",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=settings.server_debug,
        help="Enable icecream debug traces",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ic.configureOutput(prefix="🍦 DEBUG | ")
    if not args.debug:
        ic.disable()

    app_cls: type[App]
    if args.mode == "server":
        from server.app import ServerApp

        app_cls = ServerApp
    else:
        from server.app import SchemaApp

        app_cls = SchemaApp

    app = app_cls(settings)
    app.start()


if __name__ == "__main__":
    main()
