#!/usr/bin/env python3
"""
GitHunt Server - GraphQL gateway for GitHub repositories.
Serves the GitHunt schema at /graphql, GraphiQL for exploration, and the
GitHub login/logout routes.
"""

import argparse
import json
import logging
import os
import secrets
from typing import Callable, Dict, Optional

from colorama import Fore, Style, init
from flask import Flask, jsonify, redirect, request, session
from graphql import GraphQLError, OperationType, get_operation_ast, parse
from sqlalchemy.exc import SQLAlchemyError

import database
from github_client import DemoGitHubConnector, GitHubConnector, GitHubOAuthClient
from githunt.config import load_config, setup_logging
from githunt.context import (
    build_context, configure_lookup_pool, identity_from_credentials, load_credentials,
)
from githunt.errors import GatewayError, QueryTooLarge, error_payload, format_error
from githunt.schema import print_schema, schema
from githunt.services import EngagementStore, SessionStore

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)

server_logger = logging.getLogger('githunt.server')

app = Flask(__name__)
app.secret_key = os.urandom(24)

# Populated by init_app()
config: Dict = {}
session_factory = None
session_store: Optional[SessionStore] = None
oauth_client: Optional[GitHubOAuthClient] = None
connector_factory: Optional[Callable] = None


def make_connector_factory(cfg: Dict) -> Callable:
    """Return a callable building one connector per request.

    The user's OAuth token wins; anonymous requests fall back to the server
    token, if any.
    """
    connector_cls = DemoGitHubConnector if cfg.get('demo') else GitHubConnector

    def factory(token: Optional[str] = None):
        return connector_cls(
            token=token or cfg.get('github_token') or None,
            timeout=float(cfg.get('github_timeout', 10)),
            base_url=cfg.get('github_api_url') or GitHubConnector.BASE_URL,
        )
    return factory


def init_app(cfg: Optional[Dict] = None, connectors: Optional[Callable] = None) -> Flask:
    """Configure the module-level app from *cfg* (defaults to :func:`load_config`).

    Args:
        cfg:        Configuration dict.
        connectors: Optional connector factory replacing the GitHub one.
    """
    global config, session_factory, session_store, oauth_client, connector_factory
    config = load_config() if cfg is None else load_config(None, cfg)
    setup_logging(config.get('log_level', 'INFO'))

    if config.get('secret_key'):
        app.secret_key = config['secret_key']
    if config.get('pretty'):
        app.json.compact = False

    engine = database.make_engine(config['database_url'])
    if not database.init_db(engine):
        server_logger.warning('Database initialization reported failure')
    session_factory = database.make_session_factory(engine)
    session_store = SessionStore(session_factory)
    configure_lookup_pool(int(config.get('session_lookup_workers', 8)))
    oauth_client = GitHubOAuthClient(
        config.get('github_client_id', ''),
        config.get('github_client_secret', ''),
        config.get('github_callback_url', ''),
        timeout=int(config.get('github_timeout', 10)),
    )
    connector_factory = connectors or make_connector_factory(config)
    server_logger.info('GitHunt configured (database=%s, demo=%s)',
                       config['database_url'], bool(config.get('demo')))
    return app


def _ensure_initialized() -> None:
    if session_factory is None:
        init_app()


def _new_store() -> EngagementStore:
    return EngagementStore(session_factory(), feed_page_size=int(config.get('feed_page_size', 10)))


def _current_session_id() -> Optional[str]:
    return session.get('sid')


def _start_session(credentials: Dict) -> None:
    sid = secrets.token_urlsafe(32)
    session_store.save(sid, credentials)
    session.clear()
    session['sid'] = sid


# ---------------------------------------------------------------------------
# Index / login / logout
# ---------------------------------------------------------------------------

@app.route('/')
def index():
    """Small status document linking the gateway's routes."""
    _ensure_initialized()
    credentials = load_credentials(session_store, _current_session_id(),
                                   float(config.get('session_lookup_timeout', 2.0)))
    user, _ = identity_from_credentials(credentials)
    return jsonify({
        'name': 'GitHunt',
        'user': user.login if user else None,
        'graphql': '/graphql',
        'login': '/login/github',
        'logout': '/logout',
    })


@app.route('/login/github')
def login_github():
    """Redirect to GitHub's authorization page (or log in as the demo user)."""
    _ensure_initialized()
    if config.get('demo'):
        connector = connector_factory(None)
        try:
            user = connector.get_authenticated_user()
        finally:
            connector.close()
        _start_session(user.to_credentials())
        server_logger.info('Demo login as %s', user.login)
        return redirect('/')

    if not oauth_client.is_configured:
        return jsonify({'error': 'GitHub login is not configured'}), 503
    state = secrets.token_urlsafe(16)
    session['oauth_state'] = state
    return redirect(oauth_client.build_auth_url(state))


@app.route('/login/github/callback')
def login_github_callback():
    """Complete the OAuth flow and store the session credentials."""
    _ensure_initialized()
    expected_state = session.pop('oauth_state', None)
    code = request.args.get('code')
    if request.args.get('error') or not code:
        server_logger.warning('GitHub login failed: %s', request.args.get('error', 'no code'))
        return redirect('/')
    if not expected_state or request.args.get('state') != expected_state:
        server_logger.warning('GitHub login rejected: state mismatch')
        return redirect('/')

    try:
        token = oauth_client.exchange_code(code)
        connector = connector_factory(token)
        try:
            user = connector.get_authenticated_user()
        finally:
            connector.close()
        _start_session(user.to_credentials(token))
    except GatewayError as e:
        server_logger.warning('GitHub login failed: %s', e)
        return redirect('/')
    except SQLAlchemyError as e:
        server_logger.exception('Could not store session: %s', e)
        return redirect('/')

    server_logger.info('User %s logged in', user.login)
    return redirect('/')


@app.route('/logout')
def logout():
    _ensure_initialized()
    sid = session.pop('sid', None)
    if sid:
        try:
            session_store.delete(sid)
        except SQLAlchemyError as e:
            server_logger.exception('Could not delete session: %s', e)
    session.clear()
    return redirect('/')


# ---------------------------------------------------------------------------
# GraphQL (GET|POST /graphql)
# ---------------------------------------------------------------------------

GRAPHIQL_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>GitHunt GraphiQL</title>
  <style>body { margin: 0; height: 100vh; } #graphiql { height: 100vh; }</style>
  <link rel="stylesheet" href="https://unpkg.com/graphiql@3/graphiql.min.css">
</head>
<body>
  <div id="graphiql">Loading...</div>
  <script src="https://unpkg.com/react@18/umd/react.production.min.js"></script>
  <script src="https://unpkg.com/react-dom@18/umd/react-dom.production.min.js"></script>
  <script src="https://unpkg.com/graphiql@3/graphiql.min.js"></script>
  <script>
    const fetcher = GraphiQL.createFetcher({ url: "/graphql", credentials: "same-origin" });
    ReactDOM.createRoot(document.getElementById("graphiql"))
      .render(React.createElement(GraphiQL, { fetcher: fetcher }));
  </script>
</body>
</html>"""


def _bad_request(message: str, status: int = 400):
    return jsonify({'errors': [{'message': message, 'extensions': {'kind': 'BAD_REQUEST'}}]}), status


def _graphql_params() -> Dict:
    """Collect query, variables and operationName from the query string and body."""
    params: Dict = {}
    if request.method == 'POST':
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            params.update(body)
        elif request.form:
            params.update(request.form.to_dict())
    for key in ('query', 'variables', 'operationName'):
        if key not in params and key in request.args:
            params[key] = request.args[key]
    return params


def check_query_size(query: Optional[str], limit: int) -> None:
    """Raise :class:`QueryTooLarge` when *query* is longer than *limit* characters."""
    if query and len(query) > limit:
        raise QueryTooLarge(len(query), limit)


def _wants_graphiql() -> bool:
    best = request.accept_mimetypes.best_match(['application/json', 'text/html'])
    return best == 'text/html'


@app.route('/graphql', methods=['GET', 'POST'])
def graphql_endpoint():
    """Execute a GraphQL operation against the GitHunt schema.

    Request JSON::

        {"query": "{ feed(type: HOT) { score repository { full_name } } }"}

    Optional variables / operation name::

        {"query": "...", "variables": {"name": "octocat/Hello-World"},
         "operationName": "EntryPage"}

    Response JSON::

        {"data": { ... }, "errors": [ ... ]}

    Every error carries ``extensions.kind``. The status is 200 once the
    operation has executed; queries longer than ``max_query_length`` are
    rejected with 413 before parsing.
    """
    _ensure_initialized()
    params = _graphql_params()
    query = params.get('query')

    if request.method == 'GET' and not query and _wants_graphiql():
        return GRAPHIQL_HTML, 200, {'Content-Type': 'text/html; charset=utf-8'}

    if not query or not isinstance(query, str):
        return _bad_request('Must provide query string.')

    try:
        check_query_size(query, int(config.get('max_query_length', 2000)))
    except QueryTooLarge as exc:
        server_logger.warning('Rejected query of %d characters: %.200s', exc.length, query)
        return jsonify(error_payload(exc)), 413

    variables = params.get('variables') or {}
    if isinstance(variables, str):
        try:
            variables = json.loads(variables)
        except ValueError:
            return _bad_request('Variables are invalid JSON.')
    if not isinstance(variables, dict):
        return _bad_request('Variables must be an object.')
    operation_name = params.get('operationName') or None

    if request.method == 'GET':
        try:
            operation = get_operation_ast(parse(query), operation_name)
        except GraphQLError:
            operation = None  # reported by execute below
        if operation is not None and operation.operation == OperationType.MUTATION:
            return _bad_request('Mutations must be sent with POST.', 405)

    context = build_context(
        _current_session_id(), session_store, connector_factory, _new_store,
        timeout=float(config.get('session_lookup_timeout', 2.0)),
    )
    try:
        result = schema.execute(
            query,
            variable_values=variables,
            operation_name=operation_name,
            context_value=context,
        )
    finally:
        context.close()

    response: Dict = {}
    if result.errors:
        response['errors'] = [format_error(e) for e in result.errors]
    if result.data is not None:
        response['data'] = result.data
    return jsonify(response), 200


def main(argv=None):
    """Main entry point for the server"""
    parser = argparse.ArgumentParser(description='GitHunt GraphQL gateway')
    parser.add_argument('--config', default='config.json', help='Path to config file')
    parser.add_argument('--port', type=int, help='Port to listen on')
    parser.add_argument('--demo', action='store_true',
                        help='Serve a fixed demo catalogue instead of calling GitHub')
    parser.add_argument('--print-schema', action='store_true',
                        help='Print the GraphQL schema (SDL) and exit')
    args = parser.parse_args(argv)

    if args.print_schema:
        print(print_schema())
        return 0

    overrides: Dict = {}
    if args.port:
        overrides['port'] = args.port
    if args.demo:
        overrides['demo'] = True
    cfg = load_config(args.config, overrides)
    init_app(cfg)

    try:
        os.makedirs('logs', exist_ok=True)
        fh = logging.FileHandler('logs/githunt_server.log')
        fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
        logging.getLogger('githunt').addHandler(fh)
    except OSError:
        server_logger.warning('Could not create log file handler')

    port = int(cfg['port'])
    print("\n" + "=" * 60)
    print(f"{Fore.CYAN}GitHunt GraphQL gateway is starting...")
    print("=" * 60)
    print(f"\nGraphiQL:  {Fore.GREEN}http://localhost:{port}/graphql")
    if cfg.get('demo'):
        print(f"{Fore.YELLOW}Demo mode: serving a fixed catalogue, GitHub is not called")
    elif not (cfg.get('github_client_id') and cfg.get('github_client_secret')):
        print(f"{Fore.YELLOW}GITHUB_CLIENT_ID / GITHUB_CLIENT_SECRET not set: login is disabled")
    print(f"\n{Style.DIM}Press Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    try:
        app.run(host='127.0.0.1', port=port, debug=False, threaded=True)
    except KeyboardInterrupt:
        print(f"\n{Fore.CYAN}GitHunt stopped")
    return 0


if __name__ == "__main__":
    main()
