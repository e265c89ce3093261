import logging

import pos_settings
from pos_server import app, get_runtime


if __name__ == '__main__':
    logging.basicConfig(level=pos_settings.LOG_LEVEL, format='%(asctime)s %(name)s %(levelname)s %(message)s')
    runtime = get_runtime()
    try:
        # The reloader would fork a second sync loop against the same database.
        app.run(host=pos_settings.HOST, port=pos_settings.PORT, debug=pos_settings.FLASK_DEBUG, use_reloader=False)
    finally:
        runtime.stop()
