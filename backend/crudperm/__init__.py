from flask import Flask
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from typing import Optional, Dict, Any
import asyncio
import os

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()

RESOLVER_EXTENSION = 'permission_resolver'
COLUMN_RESOLVER_EXTENSION = 'column_resolver'


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    app = Flask(__name__)

    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'dev-secret')
    app.config['DATABASE_URL'] = os.getenv('DATABASE_URL', 'sqlite:///dev.db')
    app.config['PERMISSIONS_CACHE_TTL'] = int(os.getenv('PERMISSIONS_CACHE_TTL', '300'))
    app.config['ADMIN_ROLES'] = os.getenv('ADMIN_ROLES', 'super admin,admin')
    app.config['PERMISSIONS_PRELOAD'] = _env_flag('PERMISSIONS_PRELOAD', True)
    app.config['PERMISSIONS_BACKGROUND_RELOAD'] = _env_flag('PERMISSIONS_BACKGROUND_RELOAD', True)

    if config:
        # allow tests or callers to override default config values
        app.config.update(config)

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

    # Permission resolver, owned by the app instead of living at module level
    from .constants.permissions import (
        ADMIN_ONLY_PAGES, DEFAULT_PAGE_ACCESS, FALLBACK_PERMISSIONS, OPEN_PAGES, ROLE_ALIASES,
    )
    from .services.columns import ColumnPermissionResolver, ColumnPolicy
    from .services.resolver import DefaultPolicy, PermissionResolver
    from .services.source import SqlColumnPermissionSource, SqlPermissionSource
    admin_roles = app.config['ADMIN_ROLES']
    if isinstance(admin_roles, str):
        admin_roles = [r for r in (part.strip() for part in admin_roles.split(',')) if r]
    resolver = PermissionResolver(
        SqlPermissionSource(get_db),
        DefaultPolicy(admin_roles, FALLBACK_PERMISSIONS),
        ttl=app.config['PERMISSIONS_CACHE_TTL'],
        background_reload=app.config['PERMISSIONS_BACKGROUND_RELOAD'],
    )
    app.extensions[RESOLVER_EXTENSION] = resolver
    app.extensions[COLUMN_RESOLVER_EXTENSION] = ColumnPermissionResolver(
        SqlColumnPermissionSource(get_db),
        ColumnPolicy(admin_roles, DEFAULT_PAGE_ACCESS, ADMIN_ONLY_PAGES, OPEN_PAGES, ROLE_ALIASES),
        ttl=app.config['PERMISSIONS_CACHE_TTL'],
    )

    from .routes.iam import iam_bp
    from .routes.permissions import perm_bp
    from .routes.suppliers import suppliers_bp
    app.register_blueprint(iam_bp, url_prefix='/iam')
    app.register_blueprint(perm_bp, url_prefix='/permissions')
    app.register_blueprint(suppliers_bp, url_prefix='/suppliers')

    @app.route('/healthz')
    def health():
        return {'status': 'ok', 'permissions_loaded': resolver.are_permissions_loaded()}

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

    if app.config['PERMISSIONS_PRELOAD']:
        if asyncio.run(resolver.initialize()):
            app.logger.info('Permission cache warmed with %d entries', len(resolver.cache))
        else:
            app.logger.warning('Permission cache not warmed at startup; fallback matrix in effect')

    return app


def get_db():
    return SessionLocal()
