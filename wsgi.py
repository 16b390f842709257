# gevent must patch the stdlib before anything opens sockets
import gevent.monkey
gevent.monkey.patch_all()

import os
from app import create_app


app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(debug=app.config.get("DEBUG", False), host="0.0.0.0", port=port)
