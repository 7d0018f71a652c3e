"""HTTP command API for the Pastr daemon."""

from pathlib import Path

from aiohttp import web
from loguru import logger

from .error_handling import InvalidImport, PastrError, Unauthenticated


def create_api_app(daemon) -> web.Application:
    """Create the aiohttp application with routes."""
    app = web.Application()
    app['daemon'] = daemon

    app.router.add_get('/status', handle_status)
    app.router.add_get('/settings', handle_get_settings)
    app.router.add_put('/settings', handle_put_settings)

    app.router.add_post('/sync/interval', handle_set_sync_interval)
    app.router.add_post('/sync/now', handle_sync_now)
    app.router.add_post('/sync/restore', handle_restore)
    app.router.add_post('/capture', handle_set_capture)

    app.router.add_get('/auth', handle_auth_status)
    app.router.add_post('/auth/authorize', handle_authorize)
    app.router.add_post('/auth/revoke', handle_revoke)

    app.router.add_get('/snippets', handle_list_snippets)
    app.router.add_get('/snippets/{id}', handle_get_snippet)
    app.router.add_patch('/snippets/{id}', handle_update_snippet)
    app.router.add_delete('/snippets/{id}', handle_delete_snippet)
    app.router.add_post('/snippets/{id}/favorite', handle_toggle_favorite)
    app.router.add_post('/snippets/selection', handle_add_selection)
    app.router.add_post('/snippets/export', handle_export)
    app.router.add_post('/snippets/import', handle_import)

    app.router.add_get('/notifications', handle_list_notifications)
    app.router.add_post('/notifications/{id}/buttons/{index}', handle_notification_button)
    app.router.add_post('/notifications/{id}/dismiss', handle_notification_dismiss)

    app.router.add_post('/shutdown', handle_shutdown)

    return app


def error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response({'error': {'code': code, 'message': message}}, status=status)


async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(reason="Request body must be JSON")
    return data if isinstance(data, dict) else {}


async def handle_status(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    return web.json_response(await daemon.get_status())


async def handle_get_settings(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    return web.json_response(daemon.settings.all())


async def handle_put_settings(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    data = await _json_body(request)
    try:
        changed = await daemon.update_settings(data)
    except (TypeError, ValueError) as e:
        return error_response('invalid_request', str(e), 400)
    return web.json_response({'success': True, 'changed': changed})


async def handle_set_sync_interval(request: web.Request) -> web.Response:
    """Command: setSyncInterval(minutes)."""
    daemon = request.app['daemon']
    data = await _json_body(request)
    if 'minutes' not in data:
        return error_response('invalid_request', 'minutes is required', 400)
    try:
        ack = await daemon.set_sync_interval(data['minutes'])
    except (TypeError, ValueError) as e:
        return error_response('invalid_request', str(e), 400)
    return web.json_response(ack)


async def handle_set_capture(request: web.Request) -> web.Response:
    """Command: setCaptureEnabled(enabled)."""
    daemon = request.app['daemon']
    data = await _json_body(request)
    if not isinstance(data.get('enabled'), bool):
        return error_response('invalid_request', 'enabled must be a boolean', 400)
    return web.json_response(await daemon.set_capture_enabled(data['enabled']))


async def handle_sync_now(request: web.Request) -> web.Response:
    """
    Manual sync. With ``interactive`` and no credential, authorization runs
    in the background (which syncs once granted) and the reply is 202.
    """
    daemon = request.app['daemon']
    data = await _json_body(request)
    if data.get('interactive') and daemon.credentials.current is None:
        started = daemon.start_authorization()
        return web.json_response({'authorizing': True, 'started': started}, status=202)

    outcome = await daemon.sync_now()
    return web.json_response(outcome.to_dict(), status=200 if outcome.success else 502)


async def handle_restore(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    try:
        count = await daemon.restore_from_remote()
    except Unauthenticated as e:
        return error_response('unauthenticated', str(e), 401)
    except PastrError as e:
        logger.error(f"Restore failed: {e}")
        return error_response(e.status_tag, str(e), 502)

    if count is None:
        return error_response('not_found', 'No remote snapshot found', 404)
    return web.json_response({'success': True, 'restored': count})


async def handle_auth_status(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    return web.json_response({
        'authorized': daemon.credentials.current is not None,
        'prompting': daemon.credentials.prompting,
        'prompt': daemon.auth_prompt,
    })


async def handle_authorize(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    started = daemon.start_authorization()
    return web.json_response({'started': started}, status=202)


async def handle_revoke(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    return web.json_response(await daemon.deauthorize())


async def handle_list_snippets(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    snippets = await daemon.repository.list_snippets()
    return web.json_response({'snippets': [s.to_dict() for s in snippets]})


async def handle_add_selection(request: web.Request) -> web.Response:
    """Context-menu action: save selected text immediately."""
    daemon = request.app['daemon']
    data = await _json_body(request)
    try:
        snippet = await daemon.add_selection(data.get('text') or '')
    except ValueError as e:
        return error_response('invalid_request', str(e), 400)
    return web.json_response(snippet.to_dict(), status=201)


async def handle_get_snippet(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    snippet = await daemon.repository.get(request.match_info['id'])
    if snippet is None:
        return error_response('not_found', 'Snippet not found', 404)
    return web.json_response(snippet.to_dict())


async def handle_update_snippet(request: web.Request) -> web.Response:
    """Manual edit: any of content, tags, isFavorite."""
    daemon = request.app['daemon']
    data = await _json_body(request)
    try:
        snippet = await daemon.update_snippet(request.match_info['id'], data)
    except ValueError as e:
        return error_response('invalid_request', str(e), 400)
    if snippet is None:
        return error_response('not_found', 'Snippet not found', 404)
    return web.json_response(snippet.to_dict())


async def handle_toggle_favorite(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    snippet = await daemon.toggle_favorite(request.match_info['id'])
    if snippet is None:
        return error_response('not_found', 'Snippet not found', 404)
    return web.json_response(snippet.to_dict())


async def handle_delete_snippet(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    if not await daemon.delete_snippet(request.match_info['id']):
        return error_response('not_found', 'Snippet not found', 404)
    return web.json_response({'success': True})


async def handle_export(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    data = await _json_body(request)
    if not data.get('path'):
        return error_response('invalid_request', 'path is required', 400)
    count = await daemon.export_snippets(Path(data['path']).expanduser())
    return web.json_response({'success': True, 'exported': count})


async def handle_import(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    data = await _json_body(request)
    if not data.get('path'):
        return error_response('invalid_request', 'path is required', 400)
    try:
        count = await daemon.import_snippets(Path(data['path']).expanduser())
    except InvalidImport as e:
        return error_response('invalid_import', str(e), 400)
    return web.json_response({'success': True, 'imported': count})


async def handle_list_notifications(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    center = daemon.notifications
    active = center.list_active() if hasattr(center, 'list_active') else []
    return web.json_response({'notifications': [n.to_dict() for n in active]})


async def handle_notification_button(request: web.Request) -> web.Response:
    """Host button-click delivery: (notification id, button index)."""
    daemon = request.app['daemon']
    try:
        index = int(request.match_info['index'])
    except ValueError:
        return error_response('invalid_request', 'button index must be an integer', 400)

    resolution = await daemon.resolve_notification(request.match_info['id'], index)
    return web.json_response({
        'state': resolution.state.value,
        'snippet': resolution.snippet.to_dict() if resolution.snippet else None,
    })


async def handle_notification_dismiss(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    resolution = await daemon.resolve_notification(request.match_info['id'], None)
    return web.json_response({'state': resolution.state.value})


async def handle_shutdown(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    daemon.request_shutdown()
    return web.json_response({'status': 'shutting_down'})
