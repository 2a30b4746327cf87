# app.py
import logging

from examtrack import create_app, run_options, socketio
from examtrack.cli import cleanup_blacklisted_tokens

app = create_app()
logger = logging.getLogger("examtrack.app")

TOKEN_CLEANUP_INTERVAL = 3600


def token_cleanup_loop():
    while True:
        socketio.sleep(TOKEN_CLEANUP_INTERVAL)
        try:
            with app.app_context():
                removed = cleanup_blacklisted_tokens()
            if removed:
                logger.info("Removed %s expired blacklisted tokens", removed)
        except Exception:
            logger.exception("Blacklisted token cleanup failed")


if __name__ == '__main__':
    socketio.start_background_task(token_cleanup_loop)
    socketio.run(app, **run_options(app))
