#!/usr/bin/env python3
"""
Entry point for the Arena matchmaking service.

Usage:
    python run.py

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 5000)
    LOG_LEVEL: Logging level (default: INFO)
"""
import os
import logging


def run_arena():
    """Run the arena service."""
    from arena.app import create_app

    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    app = create_app()
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    logging.getLogger(__name__).info(f"Starting Arena on port {port}...")
    try:
        # The reloader would start a second orchestrator with its own queues.
        app.run(host='0.0.0.0', port=port, debug=debug, use_reloader=False, threaded=True)
    finally:
        app.orchestrator.shutdown()


if __name__ == '__main__':
    run_arena()
