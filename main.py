import os

from pos_config import POS_DB_PATH, ConfigStore, configure_logging
from pos_server import create_app


def start_background_sync(app):
    # The reloader parent process must not run a second set of sync timers.
    if os.getenv('POS_SYNC_AUTO_START', '1') != '1':
        return None
    if os.getenv('FLASK_DEBUG', '0') == '1' and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return None
    scheduler = app.extensions['pos']['scheduler']
    scheduler.start_periodic()
    return scheduler


def main():
    configure_logging()
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    app = create_app(POS_DB_PATH, ConfigStore())
    scheduler = start_background_sync(app)
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        if scheduler:
            scheduler.cancel_all()


if __name__ == '__main__':
    main()
