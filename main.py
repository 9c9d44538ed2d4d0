# project_root/main.py
import argparse
import logging

import config
from app.backend.server import run_server

if __name__ == '__main__':
    parser_main = argparse.ArgumentParser(description="Run the SegMRI viewer backend")
    parser_main.add_argument('--host', type=str, default=config.SERVER_HOST,
                             help="Host to bind the server to.")
    parser_main.add_argument('--port', type=int, default=config.SERVER_PORT,
                             help="Port to run the server on.")
    parser_main.add_argument('--log-level', type=str, default=config.LOG_LEVEL,
                             help="Logging level (DEBUG, INFO, WARNING, ...).")
    parser_main.add_argument('--debug', action='store_true', dest='debug',
                             help="Enable debug mode (auto reload) for the FastAPI server.")
    parser_main.set_defaults(debug=False)
    cli_args = parser_main.parse_args()

    logging.basicConfig(
        level=getattr(logging, cli_args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    run_server(
        host=cli_args.host,
        port=cli_args.port,
        debug=cli_args.debug,
    )
