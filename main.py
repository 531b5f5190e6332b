import os
from pos_server import app


if __name__ == '__main__':
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    # threaded: each sync stream holds its request open until the run completes
    app.run(host=host, port=port, debug=debug, threaded=True)
