from flask import Flask
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Dict, Any
import logging

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    from .config.settings import load_settings
    app = Flask(__name__)

    # environment defaults, then caller overrides (tests pass a dict)
    app.config.update(load_settings(config))
    logging.getLogger('orderflow').setLevel(app.config['LOG_LEVEL'].upper())

    # Database
    db_url = app.config['DATABASE_URL']
    if db_url.endswith(':memory:'):
        # Ensure a single shared in-memory SQLite database across all sessions
        db_engine = create_engine(
            db_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_engine = create_engine(db_url, echo=False, future=True)
    SessionLocal = scoped_session(sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False))

    jwt.init_app(app)

    # Collaborators shared by every request's engine
    from .services.stock_ledger import SqlStockLedger
    from .services.notifications import NotificationSink, RecipientResolver
    from .services.events import EventDispatcher
    from .utils.working_hours import WorkingCalendar
    executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='orderflow-events') if app.config['NOTIFY_ASYNC'] else None
    app.extensions['orderflow'] = {
        'ledger': SqlStockLedger(get_db),
        'dispatcher': EventDispatcher(
            NotificationSink(get_db), RecipientResolver(get_db), SqlStockLedger(get_db),
            executor=executor, on_thread_exit=remove_session if executor else None,
        ),
        'calendar': WorkingCalendar.from_config(app.config),
        'scheduler': None,
    }

    from .routes.orders import orders_bp
    app.register_blueprint(orders_bp, url_prefix='/orders')

    @app.route('/healthz')
    def health():
        return {'status': 'ok'}

    # Unified error handler producing standardized JSON shape
    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if isinstance(e, HTTPException):
            payload = {
                'error': {
                    'status': e.code,
                    'title': e.name,
                    'detail': e.description,
                }
            }
            return payload, e.code
        # Unhandled exception
        app.logger.exception('Unhandled exception')
        return {
            'error': {
                'status': 500,
                'title': 'Internal Server Error',
                'detail': 'Unexpected error'
            }
        }, 500

    @app.cli.command('auto-close')
    def auto_close_command():
        """Close every received order whose auto-close deadline has passed."""
        import click
        from .services.auto_close import run_auto_close_sweep
        from .services.lifecycle import get_engine
        report = run_auto_close_sweep(get_engine())
        click.echo(f"candidates={report.candidates} closed={len(report.closed)} "
                   f"skipped={len(report.skipped)} failed={len(report.failed)}")

    if app.config['AUTO_CLOSE_ENABLED']:
        from .services.auto_close import start_scheduler
        app.extensions['orderflow']['scheduler'] = start_scheduler(app)

    return app


def get_db():
    return SessionLocal()


def remove_session():
    if SessionLocal is not None:
        SessionLocal.remove()
