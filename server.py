"""Cartoonify API.

Endpoints:
  GET  /api/health
  POST /api/images/cartoonize     multipart `image` -> local cartoon filter
  POST /api/images/stylize        multipart `image` -> remote AI style (pixar_3d)
  GET  /api/images/<id>           stored metadata
  GET  /static/processed/<name>   processed PNGs

Run: flask --app server run   (or: python server.py)
Maintenance: flask --app server cleanup --max-age-hours 168
"""
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import click
from flask import Flask, g, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.utils import secure_filename

import cartoon
from ai_style import AIStyleClient, AIStyleError, AIStyleNotConfigured, DEFAULT_STYLE, to_data_uri
from config import load_settings
from metadata import ImageStore, cleanup_old_files

SERVICE_NAME = 'cartoonify-api'

ALLOWED_MIME = frozenset({'image/jpeg', 'image/jpg', 'image/png'})

log = logging.getLogger(SERVICE_NAME)


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
def configure_logging(level='INFO'):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def fail(message, status=400, **extra):
    body = {'error': message}
    body.update(extra)
    return jsonify(body), status


def _upload_name(original):
    """`<millis>-<sanitized stem>[:80]<ext>` for a stored original."""
    safe = secure_filename(Path(original or '').name) or 'upload'
    path = Path(safe)
    return f'{int(time.time() * 1000)}-{path.stem[:80]}{path.suffix}'


def _relative(path, root):
    try:
        return str(path.resolve().relative_to(root.resolve()))
    except ValueError:
        return str(path)


class UploadRejected(Exception):
    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        self.code = code


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------
def create_app(settings=None, store=None,
               ai_client=None):
    """Build the Flask app.

    Collaborators left as None are built from `settings`: the metadata store
    from DATABASE_PATH (disabled when empty) and the AI client from
    AI_STYLE_API_URL (disabled when unset).
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    upload_dir = settings.upload_abs_dir
    processed_dir = settings.processed_abs_dir
    upload_dir.mkdir(parents=True, exist_ok=True)
    processed_dir.mkdir(parents=True, exist_ok=True)

    if store is None and settings.database_abs_path is not None:
        try:
            store = ImageStore(settings.database_abs_path)
        except sqlite3.Error as e:
            log.warning('Could not open metadata database (%s); continuing without persistence: %s',
                        settings.database_abs_path, e)
    if ai_client is None:
        ai_client = AIStyleClient.from_settings(settings)

    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = settings.max_file_size_bytes + 1024 * 1024
    app.extensions['cartoonify'] = {'settings': settings, 'store': store, 'ai_client': ai_client}

    origins = list(settings.cors_origins) or '*'
    CORS(app, resources={r'/api/*': {'origins': origins}})

    log.info('Configured %s: %s', SERVICE_NAME, settings.describe())

    # -------------------------------------------------------------------------
    # Request context
    # -------------------------------------------------------------------------
    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-Id') or str(uuid.uuid4())

    @app.after_request
    def echo_request_id(response):
        request_id = getattr(g, 'request_id', None)
        if request_id:
            response.headers['X-Request-Id'] = request_id
        return response

    # -------------------------------------------------------------------------
    # Upload handling
    # -------------------------------------------------------------------------
    def receive_upload():
        """Validate the multipart file and store the original.

        Returns (file storage, bytes, absolute path of the saved original).
        """
        field = settings.upload_field_name
        f = request.files.get(field)
        if f is None or not f.filename:
            raise UploadRejected(f"Missing file. Use multipart field name '{field}'.")
        if f.mimetype not in ALLOWED_MIME:
            raise UploadRejected('Only JPG, JPEG, and PNG images are allowed.')

        data = f.stream.read(settings.max_file_size_bytes + 1)
        if len(data) > settings.max_file_size_bytes:
            raise UploadRejected('File too large', code='LIMIT_FILE_SIZE')

        original_path = upload_dir / _upload_name(f.filename)
        original_path.write_bytes(data)
        log.info('request_id=%s upload %s (%d bytes, %s)', g.request_id, f.filename, len(data), f.mimetype)
        return f, data, original_path

    @contextmanager
    def discard_on_error(original_path):
        """Remove the saved original if processing it fails."""
        try:
            yield
        except Exception:
            original_path.unlink(missing_ok=True)
            raise

    def processed_url(name):
        return f'{settings.public_base_url}/static/processed/{name}'

    def persist(f, data, original_path, out_name, out_path, style):
        if store is None:
            return None
        try:
            record = store.create(
                original_name=f.filename,
                original_path=_relative(original_path, settings.root_dir),
                mimetype=f.mimetype,
                size_bytes=len(data),
                processed_name=out_name,
                processed_path=_relative(out_path, settings.root_dir),
                processed_url=processed_url(out_name),
                style=style,
            )
        except sqlite3.Error as e:
            log.warning('request_id=%s metadata not saved: %s', g.request_id, e)
            return None
        return record['id']

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------
    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({
            'ok': True,
            'service': SERVICE_NAME,
            'time': datetime.now(timezone.utc).isoformat(),
        })

    @app.route('/api/images/cartoonize', methods=['POST'])
    def cartoonize_upload():
        f, data, original_path = receive_upload()
        with discard_on_error(original_path):
            out_name, out_path = cartoon.cartoonize_to_file(data, processed_dir)

        payload = {'pngUrl': processed_url(out_name), 'originalName': f.filename}
        image_id = persist(f, data, original_path, out_name, out_path, style='cartoon')
        if image_id:
            payload['imageId'] = image_id
        return jsonify(payload), 201

    @app.route('/api/images/stylize', methods=['POST'])
    def stylize_upload():
        if ai_client is None:
            raise AIStyleNotConfigured(
                'AI Pixar-style is not configured. Set AI_STYLE_API_URL (and optionally AI_STYLE_API_KEY) on the server.'
            )
        f, data, original_path = receive_upload()

        with discard_on_error(original_path):
            result = ai_client.stylize(to_data_uri(data, f.mimetype), style=DEFAULT_STYLE,
                                       request_id=g.request_id)
            styled = ai_client.fetch_image(result)
            try:
                png = cartoon.encode_png(cartoon.read_image(styled))
            except cartoon.CartoonError as e:
                raise AIStyleError(f'AI style API returned an unreadable image: {e}') from e
            out_name, out_path = cartoon.write_output(png, processed_dir)

        payload = {'pngUrl': processed_url(out_name), 'originalName': f.filename, 'style': DEFAULT_STYLE}
        image_id = persist(f, data, original_path, out_name, out_path, style=DEFAULT_STYLE)
        if image_id:
            payload['imageId'] = image_id
        return jsonify(payload), 201

    @app.route('/api/images/<image_id>', methods=['GET'])
    def get_image(image_id):
        if store is None:
            return fail('Metadata store is not configured', 503)
        record = store.get(image_id)
        if record is None:
            return fail('Not found', 404)
        return jsonify(record)

    @app.route('/static/processed/<path:name>', methods=['GET'])
    def processed_file(name):
        max_age = 7 * 24 * 3600 if settings.is_production else 0
        return send_from_directory(processed_dir, name, max_age=max_age)

    # -------------------------------------------------------------------------
    # Errors
    # -------------------------------------------------------------------------
    def server_error(exc, status=500):
        if settings.is_production:
            return fail('Server error', status)
        return fail('Server error', status, details=str(exc))

    @app.errorhandler(UploadRejected)
    def on_upload_rejected(exc):
        extra = {'code': exc.code} if exc.code else {}
        return fail(exc.message, 400, **extra)

    @app.errorhandler(RequestEntityTooLarge)
    def on_too_large(exc):
        return fail('File too large', 400, code='LIMIT_FILE_SIZE')

    @app.errorhandler(cartoon.DecodeError)
    @app.errorhandler(cartoon.UnsupportedFormat)
    def on_bad_image(exc):
        log.info('request_id=%s rejected image: %s', getattr(g, 'request_id', None), exc)
        return fail(str(exc), 400)

    @app.errorhandler(cartoon.DimensionMismatch)
    def on_pipeline_bug(exc):
        log.error('request_id=%s pipeline invariant violated: %s', getattr(g, 'request_id', None), exc)
        return server_error(exc)

    @app.errorhandler(AIStyleNotConfigured)
    def on_ai_not_configured(exc):
        return fail(str(exc), 503)

    @app.errorhandler(AIStyleError)
    def on_ai_failed(exc):
        log.error('request_id=%s ai_style failed: %s', getattr(g, 'request_id', None), exc)
        return fail(str(exc), 502)

    @app.errorhandler(HTTPException)
    def on_http_error(exc):
        if exc.code == 404:
            return fail('Not found', 404)
        if exc.code >= 500:
            return server_error(exc, exc.code)
        return fail(exc.description or exc.name, exc.code)

    @app.errorhandler(Exception)
    def on_unexpected(exc):
        log.exception('request_id=%s unhandled error', getattr(g, 'request_id', None))
        return server_error(exc)

    # -------------------------------------------------------------------------
    # CLI
    # -------------------------------------------------------------------------
    @app.cli.command('cleanup')
    @click.option('--max-age-hours', default=24 * 7, show_default=True, type=float,
                  help='Delete uploads and results older than this.')
    def cleanup_command(max_age_hours):
        """Delete old uploads, results and their metadata."""
        if store is None:
            raise click.ClickException('Metadata store is not configured (DATABASE_PATH is empty).')
        removed = cleanup_old_files(store, settings.root_dir, max_age_hours)
        click.echo(f'Removed {removed} record(s).')

    return app


# -----------------------------------------------------------------------------
# Entry Point
# -----------------------------------------------------------------------------
if __name__ == '__main__':
    settings = load_settings()
    app = create_app(settings)
    log.info('Starting %s on port %d', SERVICE_NAME, settings.port)
    app.run(host='0.0.0.0', port=settings.port, debug=not settings.is_production)
