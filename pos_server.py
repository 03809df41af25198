from flask import Flask, request, jsonify
from dotenv import load_dotenv
import requests
import os
import logging
from functools import wraps
from typing import Any, Dict, Optional

# Load environment variables before the local modules read any settings
load_dotenv()

from pos_models import BillItem, Item, Transaction, User
from pos_service import (
    FROM_ENV,
    BillingRepository,
    build_bill_item,
    epoch_millis,
    new_record_id,
)
from pos_session import ProfileHolder
from pos_store import KeyValueStore, SQLiteStore
from pos_views import ViewCoordinator
from receipt_agent import format_receipt


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw

_LOG_LEVEL_NAME = (os.getenv('POS_LOG_LEVEL') or 'INFO').strip().upper()
_LOG_LEVEL = getattr(logging, _LOG_LEVEL_NAME, logging.INFO)

POS_DB_PATH = _env_string('POS_DB_PATH', 'quickbill.db')

# Local receipt helper configuration
RECEIPT_AGENT_HOST = os.getenv('RECEIPT_AGENT_HOST')
RECEIPT_AGENT_PORT = os.getenv('RECEIPT_AGENT_PORT')
RECEIPT_AGENT_PATH = os.getenv('RECEIPT_AGENT_PATH', '/print')
RECEIPT_AGENT_USE_HTTPS = os.getenv('RECEIPT_AGENT_USE_HTTPS', '0') == '1'
RECEIPT_AGENT_URL = _env_string('RECEIPT_AGENT_URL')
if not RECEIPT_AGENT_URL and RECEIPT_AGENT_HOST and RECEIPT_AGENT_PORT:
    scheme = 'https' if RECEIPT_AGENT_USE_HTTPS else 'http'
    path = RECEIPT_AGENT_PATH if RECEIPT_AGENT_PATH.startswith('/') else f'/{RECEIPT_AGENT_PATH}'
    RECEIPT_AGENT_URL = f"{scheme}://{RECEIPT_AGENT_HOST}:{RECEIPT_AGENT_PORT}{path}"
try:
    RECEIPT_AGENT_TIMEOUT = float(os.getenv('RECEIPT_AGENT_TIMEOUT', '5'))
except ValueError:
    RECEIPT_AGENT_TIMEOUT = 5.0

_TRUTHY = ('1', 'true', 'yes', 'on')


class PayloadError(ValueError):
    """Raised when a request body cannot be turned into a record."""


def _error(message: str, status: int):
    return jsonify({'status': 'error', 'message': message}), status


def _json_body() -> Dict[str, Any]:
    """The request body as a JSON object; a missing or unparsable body is empty."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PayloadError('Request body must be a JSON object')
    return data


def _as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def _required_text(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None or not str(value).strip():
        raise PayloadError(f'{key} is required')
    return str(value).strip()


def _number(data: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    value = data.get(key, default)
    if value is None:
        raise PayloadError(f'{key} is required')
    try:
        return float(value)
    except (TypeError, ValueError):
        raise PayloadError(f'{key} must be a number') from None


def _item_from_payload(data: Dict[str, Any], item_id: Optional[str] = None) -> Item:
    return Item(
        id=item_id or str(data.get('id') or new_record_id()),
        name=_required_text(data, 'name'),
        rate=_number(data, 'rate'),
        category=str(data.get('category') or '').strip(),
    )


def _bill_item_from_payload(repository: BillingRepository, line: Dict[str, Any]) -> BillItem:
    if not isinstance(line, dict):
        raise PayloadError('Each bill line must be an object')
    item_id = _required_text(line, 'itemId')
    quantity = _number(line, 'quantity')
    if quantity <= 0:
        raise PayloadError('quantity must be greater than zero')
    if line.get('rate') is None:
        # Price the line from the current catalogue
        item = repository.find_item(item_id)
        if item is None:
            raise PayloadError(f'Unknown item {item_id}')
        return build_bill_item(item, quantity, line_id=line.get('id'))
    rate = _number(line, 'rate')
    total = _number(line, 'total', rate * quantity)
    return BillItem(
        id=str(line.get('id') or new_record_id()),
        item_id=item_id,
        name=str(line.get('name') or item_id),
        rate=rate,
        quantity=quantity,
        total=total,
    )


def _transaction_from_payload(repository: BillingRepository, data: Dict[str, Any]) -> Transaction:
    lines = data.get('items')
    if not isinstance(lines, list) or not lines:
        raise PayloadError('Items are required')
    bill_items = tuple(_bill_item_from_payload(repository, line) for line in lines)
    total_amount = data.get('totalAmount')
    customer = str(data.get('customerName') or '').strip()
    return Transaction(
        id=str(data.get('id') or new_record_id()),
        timestamp=int(_number(data, 'timestamp', epoch_millis())),
        items=bill_items,
        total_amount=(
            _number(data, 'totalAmount') if total_amount is not None
            else sum(line.total for line in bill_items)
        ),
        customer_name=customer or None,
    )


class RequestConfirmation:
    """The operator answers the prompt up front with an explicit confirm flag."""

    def __init__(self, logger: logging.Logger):
        data = _json_body()
        self.flag = _as_flag(data.get('confirm', request.args.get('confirm')))
        self.granted = False
        self.logger = logger

    def __call__(self, description: str) -> bool:
        self.logger.info('Confirmation "%s" answered %s', description, 'yes' if self.flag else 'no')
        self.granted = self.flag
        return self.flag


def create_app(
    store: Optional[KeyValueStore] = None,
    receipt_agent_url: Optional[str] = RECEIPT_AGENT_URL,
    backup_dir: Optional[str] = FROM_ENV,
    env_file: Optional[str] = None,
) -> Flask:
    if env_file:
        load_dotenv(env_file, override=True)
    app = Flask(__name__)
    app.config['SEND_FILE_MAX_AGE_DEFAULT'] = 0
    app.logger.setLevel(_LOG_LEVEL)
    logging.getLogger('werkzeug').setLevel(_LOG_LEVEL)

    store = store if store is not None else SQLiteStore(db_path=_env_string('POS_DB_PATH', POS_DB_PATH))
    repository = BillingRepository(store, backup_dir=backup_dir).load()
    profile = ProfileHolder(store)
    profile.load()
    coordinator = ViewCoordinator(repository, profile)
    app.extensions['quickbill'] = {
        'store': store,
        'repository': repository,
        'profile': profile,
        'views': coordinator,
    }

    def post_receipt(transaction: Transaction) -> bool:
        """Hand the newest sale to the receipt agent; failures never undo the sale."""
        payload = {'transaction': transaction.to_dict(), 'phone': profile.phone}
        try:
            resp = requests.post(receipt_agent_url, json=payload, timeout=RECEIPT_AGENT_TIMEOUT)
        except requests.RequestException as exc:
            app.logger.warning('Receipt agent unreachable for %s: %s', transaction.id, exc)
            return False
        if resp.status_code != 200:
            app.logger.warning(
                'Receipt agent rejected %s: status=%s body=%s',
                transaction.id, resp.status_code, resp.text[:200]
            )
            return False
        app.logger.info('Receipt for %s sent to %s', transaction.id, receipt_agent_url)
        return True

    if receipt_agent_url:
        repository.on_transaction_saved(post_receipt)
    app.extensions['quickbill']['post_receipt'] = post_receipt

    def login_required(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if not profile.is_authenticated:
                return _error('Login required', 401)
            return view(*args, **kwargs)
        return wrapper

    @app.errorhandler(PayloadError)
    def handle_payload_error(exc):
        return _error(str(exc), 400)

    @app.after_request
    def add_no_cache_headers(response):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
        response.headers['Pragma'] = 'no-cache'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        return response

    @app.get('/health')
    def health():
        return 'ok', 200

    # ---------- SESSION ----------
    @app.route('/api/session')
    def api_session():
        existing = profile.existing_user
        return jsonify({
            'status': 'success',
            'authenticated': profile.is_authenticated,
            'existingUser': {'phone': existing.phone} if existing else None,
        })

    @app.route('/api/login', methods=['POST'])
    def api_login():
        """Store the operator profile and open the till. Last login wins."""
        data = _json_body()
        user = User(phone=_required_text(data, 'phone'), pin=_required_text(data, 'pin'))
        profile.login(user)
        return jsonify({'status': 'success', 'user': {'phone': user.phone}, 'view': coordinator.active_view.value})

    @app.route('/api/logout', methods=['POST'])
    def api_logout():
        profile.logout()
        return jsonify({'status': 'success'})

    # ---------- VIEWS ----------
    @app.route('/api/view')
    def api_view():
        return jsonify({'status': 'success', **coordinator.render()})

    @app.route('/api/view', methods=['POST'])
    def api_switch_view():
        coordinator.switch(_json_body().get('view') or '')
        return jsonify({'status': 'success', **coordinator.render()})

    # ---------- INVENTORY ----------
    @app.route('/api/items')
    @login_required
    def api_items():
        return jsonify({'status': 'success', 'items': [item.to_dict() for item in repository.items]})

    @app.route('/api/items', methods=['POST'])
    @login_required
    def api_add_item():
        item = repository.add_item(_item_from_payload(_json_body()))
        return jsonify({'status': 'success', 'item': item.to_dict()}), 201

    @app.route('/api/items/<item_id>', methods=['PUT'])
    @login_required
    def api_update_item(item_id):
        item = _item_from_payload(_json_body(), item_id=item_id)
        updated = repository.update_item(item)
        return jsonify({'status': 'success', 'updated': updated, 'item': item.to_dict()})

    @app.route('/api/items/<item_id>', methods=['DELETE'])
    @login_required
    def api_delete_item(item_id):
        confirm = RequestConfirmation(app.logger)
        removed = repository.delete_item(item_id, confirm=confirm)
        if not confirm.granted:
            return jsonify({'status': 'cancelled'})
        return jsonify({'status': 'success', 'removed': removed})

    # ---------- TRANSACTIONS ----------
    @app.route('/api/transactions')
    @login_required
    def api_transactions():
        return jsonify({
            'status': 'success',
            'transactions': [txn.to_dict() for txn in repository.transactions],
        })

    @app.route('/api/transactions', methods=['POST'])
    @login_required
    def api_save_transaction():
        txn = _transaction_from_payload(repository, _json_body())
        repository.save_transaction(txn)
        return jsonify({'status': 'success', 'transaction': txn.to_dict()}), 201

    @app.route('/api/transactions/<transaction_id>', methods=['DELETE'])
    @login_required
    def api_delete_transaction(transaction_id):
        confirm = RequestConfirmation(app.logger)
        removed = repository.delete_transaction(transaction_id, confirm=confirm)
        if not confirm.granted:
            return jsonify({'status': 'cancelled'})
        return jsonify({'status': 'success', 'removed': removed})

    @app.route('/api/receipt/latest')
    @login_required
    def api_latest_receipt():
        latest = repository.latest_transaction
        if latest is None:
            return _error('No transactions yet', 404)
        return jsonify({
            'status': 'success',
            'transaction': latest.to_dict(),
            'text': format_receipt(latest, profile.phone),
        })

    # ---------- RESET ----------
    @app.route('/api/clear-all', methods=['POST'])
    @login_required
    def api_clear_all():
        if not repository.clear_all(confirm=RequestConfirmation(app.logger)):
            return jsonify({'status': 'cancelled'})
        app.logger.warning('All data cleared by operator %s', profile.phone)
        return jsonify({'status': 'success', 'message': 'All data cleared.'})

    return app
