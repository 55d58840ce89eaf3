'''
This file is the HTTP layer which declares the routes of the subscription backend. The routes are
registered onto a Flask application through `init`.

The role of this layer is to intercept and sanitize the HTTP request, extract the fields into
typed values and hand them to Paystack (paystack.py) and the backend (backend.py). Every change to
a subscription goes through the backend, no route writes to the DB directly.

A payment is reported to us by three independent routes and any of them may arrive first, twice,
or not at all:

  /paystack/callback  Browser redirect after the user completes the payment, answered with a
                      redirect back into the app through its deep link scheme.
  /verify/<ref>       The app polling for the outcome, answered with JSON.
  /webhook/paystack   Paystack notifying us server-to-server, acknowledged immediately and
                      processed on a background thread.
'''

import dataclasses
import enum
import json
import logging
import threading
import traceback
import typing
import urllib.parse

import flask

import backend
import base
import paystack
from base import JSONObject

log = logging.Logger('SERVER')

class GetJSONFromFlaskRequest:
    json:    JSONObject = {}
    err_msg: str        = ''

class ErrorCode(enum.Enum):
    ValidationError    = 'validation_error'
    Conflict           = 'conflict'
    GatewayError       = 'gateway_error'
    AuthError          = 'auth_error'
    ConfigError        = 'config_error'
    NotSuccess         = 'not_success'
    AmountMismatch     = 'amount_mismatch'
    IncompleteMetadata = 'incomplete_metadata'

class CallbackStatus(enum.Enum):
    Success = 'success'
    Failed  = 'failed'
    Error   = 'error'

class PaymentCheckStatus(enum.Enum):
    Nil          = 0
    Applied      = 1 # Reconciled onto the subscription (or was already)
    Rejected     = 2 # Paystack answered but the payment does not grant a subscription
    GatewayError = 3

@dataclasses.dataclass
class Settings:
    '''Values from the configuration that the routes need at request time'''
    paystack_secret:                 str = ''
    app_scheme:                      str = 'joki'
    app_name:                        str = 'joki'
    base_url:                        str = ''
    subscription_days:               int = 30
    subscription_amount_minor_units: int = 500000

@dataclasses.dataclass
class PaymentCheck:
    status:            PaymentCheckStatus = PaymentCheckStatus.Nil
    error:             ErrorCode | None   = None
    expiry_unix_ts_ms: int | None         = None
    details:           JSONObject         = dataclasses.field(default_factory=dict)

class WebhookTaskRunner:
    '''
    Runs webhook processing on detached daemon threads after the HTTP response has been sent.
    Paystack only needs to know that we received the event, a failure while applying it is logged
    here and never turned into an error response (which would make Paystack redeliver it).
    '''
    lock:    threading.Lock
    threads: list[threading.Thread]

    def __init__(self):
        self.lock    = threading.Lock()
        self.threads = []

    def submit(self, fn: typing.Callable[..., typing.Any], *args: typing.Any) -> threading.Thread:
        thread = threading.Thread(target=self._run, args=(fn, args), daemon=True)
        with self.lock:
            self.threads = [it for it in self.threads if it.is_alive()]
            self.threads.append(thread)
        thread.start()
        return thread

    def _run(self, fn: typing.Callable[..., typing.Any], args: tuple[typing.Any, ...]):
        try:
            fn(*args)
        except Exception:
            log.error(f'Webhook task failed: {traceback.format_exc()}')

    def wait(self, timeout_s: float | None = None) -> bool:
        '''Join every outstanding task, returns false if any of them are still running'''
        with self.lock:
            threads = list(self.threads)
        for it in threads:
            it.join(timeout=timeout_s)
        result = not any(it.is_alive() for it in threads)
        return result

# Keys stored in the flask app config dictionary that can be retrieved within a request
CONFIG_DB_PATH_KEY        = 'subscription_backend_db_path'
CONFIG_DB_PATH_IS_URI_KEY = 'subscription_backend_db_path_is_uri'
CONFIG_SETTINGS_KEY       = 'subscription_backend_settings'
CONFIG_GATEWAY_KEY        = 'subscription_backend_gateway'
CONFIG_WEBHOOK_RUNNER_KEY = 'subscription_backend_webhook_runner'

# Name of the endpoints exposed on the server
ROUTE_HEALTH            = '/health'
ROUTE_STATUS            = '/status'
ROUTE_PAY               = '/pay'
ROUTE_PAYSTACK_CALLBACK = '/paystack/callback'
ROUTE_VERIFY            = '/verify/<reference>'
ROUTE_WEBHOOK_PAYSTACK  = '/webhook/paystack'

# Host part of the deep link the browser is redirected to once the payment flow finishes
DEEP_LINK_HOST = 'paystack-callback'

# The object containing routes that you register onto a Flask app to turn it into an app that
# serves the subscription backend.
flask_blueprint = flask.Blueprint('subscription-backend-blueprint', __name__)

def json_bad_response(http_status: int, code: ErrorCode, msg: str | list[str], details: JSONObject | None = None) -> flask.Response:
    body: dict[str, typing.Any] = {'ok': False, 'error': code.value, 'msg': msg}
    if details is not None:
        body['details'] = details
    result             = flask.jsonify(body)
    result.status_code = http_status
    return result

def json_good_response(dict_result: dict[str, typing.Any]) -> flask.Response:
    result = flask.jsonify(dict_result)
    return result

def get_json_from_flask_request(request: flask.Request) -> GetJSONFromFlaskRequest:
    result: GetJSONFromFlaskRequest = GetJSONFromFlaskRequest()
    try:
        json_dict = json.loads(request.data)
        if isinstance(json_dict, dict):
            result.json = typing.cast(JSONObject, json_dict)
        else:
            result.err_msg = 'JSON body must be an object'
    except Exception as e:
        result.err_msg = f'JSON failed to be parsed: {e}'
    return result

def require_field(value: str, label: str, err: base.ErrorSink) -> str:
    result = value.strip()
    if len(result) == 0:
        err.msg_list.append(f'Missing {label}')
    return result

def make_deep_link(app_scheme: str, status: CallbackStatus, reference: str) -> str:
    query  = urllib.parse.urlencode({'status': status.value, 'type': 'subscription', 'reference': reference})
    result = f'{app_scheme}://{DEEP_LINK_HOST}?{query}'
    return result

def init(testing_mode:   bool,
         db_path:        str,
         db_path_is_uri: bool,
         settings:       Settings,
         gateway:        paystack.Gateway) -> flask.Flask:
    result                                    = flask.Flask(__name__)
    result.config['TESTING']                  = testing_mode
    result.config[CONFIG_DB_PATH_KEY]         = db_path
    result.config[CONFIG_DB_PATH_IS_URI_KEY]  = db_path_is_uri
    result.config[CONFIG_SETTINGS_KEY]        = settings
    result.config[CONFIG_GATEWAY_KEY]         = gateway
    result.config[CONFIG_WEBHOOK_RUNNER_KEY]  = WebhookTaskRunner()
    result.register_blueprint(flask_blueprint)
    return result

def open_db_from_flask_request_context(flask_app: flask.Flask) -> backend.OpenDBAtPath:
    assert CONFIG_DB_PATH_KEY        in flask_app.config
    assert CONFIG_DB_PATH_IS_URI_KEY in flask_app.config
    db_path        = typing.cast(str,  flask_app.config[CONFIG_DB_PATH_KEY])
    db_path_is_uri = typing.cast(bool, flask_app.config[CONFIG_DB_PATH_IS_URI_KEY])
    result         = backend.OpenDBAtPath(db_path, db_path_is_uri)
    return result

def settings_from_flask_app(flask_app: flask.Flask) -> Settings:
    result = typing.cast(Settings, flask_app.config[CONFIG_SETTINGS_KEY])
    return result

def gateway_from_flask_app(flask_app: flask.Flask) -> paystack.Gateway:
    result = typing.cast(paystack.Gateway, flask_app.config[CONFIG_GATEWAY_KEY])
    return result

def webhook_runner_from_flask_app(flask_app: flask.Flask) -> WebhookTaskRunner:
    result = typing.cast(WebhookTaskRunner, flask_app.config[CONFIG_WEBHOOK_RUNNER_KEY])
    return result

def verify_and_reconcile(reference: str, settings: Settings, gateway: paystack.Gateway, flask_app: flask.Flask) -> PaymentCheck:
    '''Ask Paystack about `reference` and apply it to the subscription if it was paid in full'''
    result = PaymentCheck()
    err    = base.ErrorSink()
    tx     = gateway.verify_transaction(reference, err)
    if not tx.success or err.has():
        result.status  = PaymentCheckStatus.GatewayError
        result.error   = ErrorCode.GatewayError
        result.details = tx.details
        log.error(f'Verifying {reference} with Paystack failed: {err.build()}')
        return result

    if tx.status != paystack.TRANSACTION_SUCCESS:
        result.status = PaymentCheckStatus.Rejected
        result.error  = ErrorCode.NotSuccess
        log.info(f'Transaction {reference} was not successful (status={tx.status})')
        return result

    payment = backend.VerifiedPayment(reference          = tx.reference or reference,
                                      amount_minor_units = tx.amount_minor_units,
                                      email              = base.json_dict_optional_str(tx.metadata, 'email'),
                                      device_id          = base.json_dict_optional_str(tx.metadata, 'deviceId'),
                                      app_id             = base.json_dict_optional_str(tx.metadata, 'appId'))

    with open_db_from_flask_request_context(flask_app) as db:
        outcome = backend.record_verified_payment(sql_conn                    = db.sql_conn,
                                                  payment                     = payment,
                                                  expected_amount_minor_units = settings.subscription_amount_minor_units,
                                                  subscription_days           = settings.subscription_days,
                                                  unix_ts_ms                  = base.unix_ts_ms_now(),
                                                  err                         = err)

    if outcome.ok():
        result.status            = PaymentCheckStatus.Applied
        result.expiry_unix_ts_ms = outcome.expiry_unix_ts_ms
    elif outcome.status == backend.ReconcileStatus.AmountMismatch:
        result.status = PaymentCheckStatus.Rejected
        result.error  = ErrorCode.AmountMismatch
    elif outcome.status == backend.ReconcileStatus.IncompleteMetadata:
        result.status = PaymentCheckStatus.Rejected
        result.error  = ErrorCode.IncompleteMetadata
    else:
        # NOTE: The DB refused the write, surface it like an upstream failure so the caller retries
        result.status  = PaymentCheckStatus.GatewayError
        result.error   = ErrorCode.GatewayError
        result.details = {'message': err.build()}
        log.error(f'Failed to apply verified payment {reference}: {err.build()}')
    return result

def handle_webhook_event(raw_body: bytes, settings: Settings, db_path: str, db_path_is_uri: bool) -> backend.ReconcileOutcome | None:
    '''
    Apply an authenticated webhook body. Runs on a WebhookTaskRunner thread, outside of the request
    context, so everything it needs is passed in. Returns None for events that are not handled.
    '''
    event: typing.Any = json.loads(raw_body)
    if not isinstance(event, dict):
        log.error(f'Webhook body was not a JSON object ({type(event)})')
        return None

    event_type = event.get('event')
    if event_type != paystack.EVENT_CHARGE_SUCCESS:
        log.info(f'Ignoring Paystack webhook event: {event_type}')
        return None

    err  = base.ErrorSink()
    data = base.json_dict_require_obj(typing.cast(JSONObject, event), 'data', err)
    reference = base.json_dict_require_str(data, 'reference', err)
    if err.has():
        log.error(f'Malformed {paystack.EVENT_CHARGE_SUCCESS} webhook: {err.build()}')
        return None

    metadata = paystack.parse_metadata(data.get('metadata'))
    payment  = backend.VerifiedPayment(reference          = reference,
                                       amount_minor_units = paystack.parse_amount(data.get('amount')),
                                       email              = base.json_dict_optional_str(metadata, 'email'),
                                       device_id          = base.json_dict_optional_str(metadata, 'deviceId'),
                                       app_id             = base.json_dict_optional_str(metadata, 'appId'))

    with backend.OpenDBAtPath(db_path, db_path_is_uri) as db:
        result = backend.record_verified_payment(sql_conn                    = db.sql_conn,
                                                 payment                     = payment,
                                                 expected_amount_minor_units = settings.subscription_amount_minor_units,
                                                 subscription_days           = settings.subscription_days,
                                                 unix_ts_ms                  = base.unix_ts_ms_now(),
                                                 err                         = err)
    if err.has():
        log.error(f'Failed to apply webhook payment {reference}: {err.build()}')
    elif not result.ok():
        log.warning(f'Webhook payment {reference} was rejected: {result.error_code()}')
    return result

@flask_blueprint.route(ROUTE_HEALTH, methods=['GET'])
def health() -> flask.Response:
    return json_good_response({'ok': True, 'ts': base.iso8601_from_unix_ts_ms(base.unix_ts_ms_now())})

@flask_blueprint.route(ROUTE_STATUS, methods=['GET'])
def status() -> flask.Response:
    # Extract values from the query
    err       = base.ErrorSink()
    email     = require_field(flask.request.args.get('email',    ''), 'email',    err)
    device_id = require_field(flask.request.args.get('deviceId', ''), 'deviceId', err)
    app_id    = require_field(flask.request.args.get('appId',    ''), 'appId',    err)
    if err.has():
        return json_bad_response(400, ErrorCode.ValidationError, err.msg_list)

    key = backend.make_identity_key(email, device_id, app_id)
    with open_db_from_flask_request_context(flask.current_app) as db:
        row = backend.get_subscription(db.sql_conn, key)

    # NOTE: Rows are not cleared the moment they expire, gate on the expiry at query time
    if row.is_active_at(base.unix_ts_ms_now()):
        assert row.expiry_unix_ts_ms is not None
        return json_good_response({'active': True, 'expiresAt': base.iso8601_from_unix_ts_ms(row.expiry_unix_ts_ms)})
    return json_good_response({'active': False})

@flask_blueprint.route(ROUTE_PAY, methods=['POST'])
def pay() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return json_bad_response(400, ErrorCode.ValidationError, get.err_msg)

    # Extract values from JSON
    err       = base.ErrorSink()
    email     = require_field(base.json_dict_optional_str(get.json, 'email'),    'email',    err)
    device_id = require_field(base.json_dict_optional_str(get.json, 'deviceId'), 'deviceId', err)
    app_id    = require_field(base.json_dict_optional_str(get.json, 'appId'),    'appId',    err)
    if err.has():
        return json_bad_response(400, ErrorCode.ValidationError, err.msg_list)

    settings = settings_from_flask_app(flask.current_app)
    if len(settings.paystack_secret) == 0:
        err.msg_list.append('Paystack secret key is not configured')
    if len(settings.base_url) == 0:
        err.msg_list.append('Public base URL is not configured')
    if err.has():
        log.error(f'Refusing payment, server is misconfigured: {err.build()}')
        return json_bad_response(500, ErrorCode.ConfigError, err.msg_list)

    key     = backend.make_identity_key(email, device_id, app_id)
    gateway = gateway_from_flask_app(flask.current_app)
    with open_db_from_flask_request_context(flask.current_app) as db:
        # NOTE: Cheap check before creating a transaction on Paystack, upsert_pending checks again
        # atomically in case a payment was applied in the meantime.
        existing = backend.get_subscription(db.sql_conn, key)
        if existing.is_active_at(base.unix_ts_ms_now()):
            assert existing.expiry_unix_ts_ms is not None
            return json_bad_response(409, ErrorCode.Conflict, 'Subscription is already active',
                                     {'expiresAt': base.iso8601_from_unix_ts_ms(existing.expiry_unix_ts_ms)})

        metadata: JSONObject = {'email': key.email, 'deviceId': key.device_id, 'appId': key.app_id, 'app': settings.app_name}
        init = gateway.initialize_transaction(email              = key.email,
                                              amount_minor_units = settings.subscription_amount_minor_units,
                                              metadata           = metadata,
                                              callback_url       = f'{settings.base_url.rstrip("/")}{ROUTE_PAYSTACK_CALLBACK}',
                                              err                = err)
        if not init.success or err.has():
            log.error(f'Failed to initialise payment for {key.log_label()}: {err.build()}')
            return json_bad_response(500, ErrorCode.GatewayError, err.msg_list, init.details)

        upsert = backend.upsert_pending(db.sql_conn, key, init.reference, base.unix_ts_ms_now())
        if upsert.status == backend.UpsertPendingStatus.Conflict:
            assert upsert.existing.expiry_unix_ts_ms is not None
            return json_bad_response(409, ErrorCode.Conflict, 'Subscription is already active',
                                     {'expiresAt': base.iso8601_from_unix_ts_ms(upsert.existing.expiry_unix_ts_ms)})

    return json_good_response({'ok': True, 'authorizationUrl': init.authorization_url, 'reference': init.reference})

@flask_blueprint.route(ROUTE_PAYSTACK_CALLBACK, methods=['GET'])
def paystack_callback() -> flask.Response:
    # NOTE: The caller is a browser, every outcome is a redirect back into the app
    settings  = settings_from_flask_app(flask.current_app)
    reference = flask.request.args.get('reference', '').strip()
    outcome   = CallbackStatus.Error
    if len(reference):
        try:
            check = verify_and_reconcile(reference, settings, gateway_from_flask_app(flask.current_app), flask.current_app)
            match check.status:
                case PaymentCheckStatus.Applied:  outcome = CallbackStatus.Success
                case PaymentCheckStatus.Rejected: outcome = CallbackStatus.Failed
                case _:                           outcome = CallbackStatus.Error
        except Exception:
            log.error(f'Callback verification of {reference} failed: {traceback.format_exc()}')
    else:
        log.warning('Paystack callback was missing the reference')

    result = flask.redirect(make_deep_link(settings.app_scheme, outcome, reference), code=302)
    return typing.cast(flask.Response, result)

@flask_blueprint.route(ROUTE_VERIFY, methods=['GET'])
def verify(reference: str) -> flask.Response:
    settings = settings_from_flask_app(flask.current_app)
    try:
        check = verify_and_reconcile(reference, settings, gateway_from_flask_app(flask.current_app), flask.current_app)
    except Exception:
        # NOTE: e.g. the DB stayed locked past the connection timeout, answer in JSON like every other failure
        log.error(f'Verification of {reference} failed: {traceback.format_exc()}')
        return json_bad_response(500, ErrorCode.GatewayError, f'Failed to verify {reference}')

    match check.status:
        case PaymentCheckStatus.Applied:
            expires_at = base.iso8601_from_unix_ts_ms(check.expiry_unix_ts_ms) if check.expiry_unix_ts_ms is not None else None
            return json_good_response({'ok': True, 'expiresAt': expires_at})
        case PaymentCheckStatus.Rejected:
            assert check.error
            return json_good_response({'ok': False, 'error': check.error.value})
        case _:
            return json_bad_response(500, ErrorCode.GatewayError, f'Failed to verify {reference}', check.details)

@flask_blueprint.route(ROUTE_WEBHOOK_PAYSTACK, methods=['POST'])
def webhook_paystack() -> flask.Response:
    # NOTE: Grab the body before anything parses it, the signature covers these exact bytes
    raw_body  = flask.request.get_data(cache=True)
    signature = flask.request.headers.get(paystack.SIGNATURE_HEADER, '')
    settings  = settings_from_flask_app(flask.current_app)
    if not paystack.verify_webhook_signature(raw_body, signature, settings.paystack_secret):
        log.warning(f'Rejected Paystack webhook with an invalid signature ({len(raw_body)} bytes)')
        return json_bad_response(403, ErrorCode.AuthError, 'Invalid signature')

    runner = webhook_runner_from_flask_app(flask.current_app)
    _      = runner.submit(handle_webhook_event,
                           raw_body,
                           settings,
                           flask.current_app.config[CONFIG_DB_PATH_KEY],
                           flask.current_app.config[CONFIG_DB_PATH_IS_URI_KEY])
    return flask.Response(status=200)
