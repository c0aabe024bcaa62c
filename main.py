import logging
import os

import settings
from inventory_server import create_app
from gateway import open_gateway
from sync_worker import SyncWorker


def start_sync_worker(gateway):
    if os.getenv('SYNC_WORKER_AUTO_START', '1') != '1':
        return None
    # Flask's reloader runs this module twice; only the child serves requests.
    if os.getenv('FLASK_DEBUG', '0') == '1' and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return None
    worker = SyncWorker(gateway)
    worker.start()
    return worker


if __name__ == '__main__':
    logging.basicConfig(level=settings.LOG_LEVEL,
                        format='[inventory] %(asctime)s %(levelname)s %(name)s: %(message)s')
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    gateway = open_gateway()
    worker = start_sync_worker(gateway)
    app = create_app(gateway, worker)
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        if worker:
            worker.stop()
        gateway.close()
