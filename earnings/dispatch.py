import gevent
from gevent import monkey
from flask import current_app
from extensions import db
from logger import payments_logger as logger


class CallbackDispatcher:
    """
    Hands webhook work off the request path. In "async" mode each job runs in
    its own greenlet with a fresh app context and session; "sync" runs inline.

    A greenlet only gets scheduled when the worker's sockets are gevent-patched
    (the gevent gunicorn worker, or wsgi.py). Under any other server the job
    would never run, so it runs inline instead.
    """

    @staticmethod
    def dispatch(func, *args):
        app = current_app._get_current_object()
        if app.config.get("CALLBACK_DISPATCH_MODE", "async") == "sync":
            return func(*args)
        if not monkey.is_module_patched("socket"):
            logger.debug(f"gevent not patched, running {func.__qualname__} inline")
            return func(*args)
        return gevent.spawn(CallbackDispatcher._run, app, func, *args)

    @staticmethod
    def _run(app, func, *args):
        with app.app_context():
            try:
                return func(*args)
            except Exception as e:
                logger.error(f"Dispatched job {func.__qualname__}{args} failed: {e}", exc_info=True)
            finally:
                db.session.remove()
