'''
Testing module for the subscription backend, testing internal and public APIs.

The backend tests call the DB APIs directly to test the outcome on the tables in the SQLite
database.

The server tests spin up a local Flask instance as per
(https://flask.palletsprojects.com/en/stable/testing/#sending-requests-with-the-test-client) and
send requests using the test client. Paystack is replaced by a fake gateway injected through the
Flask config so no test touches the network, and the clock is frozen by patching
`base.unix_ts_ms_now`.
'''

import dataclasses
import json
import pathlib
import sqlite3
import threading
import traceback
import typing
import urllib.parse

import flask
import pytest
import urllib3
import werkzeug

import backend
import base
import config
import paystack
import server

TEST_SECRET:          str = 'sk_test_0123456789abcdef'
TEST_AMOUNT:          int = 500000
TEST_DAYS:            int = 30
START_UNIX_TS_MS:     int = 1_790_000_000_000
SUBSCRIPTION_MS:      int = TEST_DAYS * base.MILLISECONDS_IN_DAY

@dataclasses.dataclass
class FrozenClock:
    unix_ts_ms: int = START_UNIX_TS_MS

    def now(self) -> int:
        return self.unix_ts_ms

    def advance_days(self, days: float):
        self.unix_ts_ms += int(days * base.MILLISECONDS_IN_DAY)

@dataclasses.dataclass
class InitializeCall:
    email:              str
    amount_minor_units: int
    metadata:           base.JSONObject
    callback_url:       str

class FakeGateway:
    '''
    Stands in for Paystack. Initialising creates an 'abandoned' transaction carrying the metadata
    and amount it was created with, `complete` flips it to 'success' as if the user paid.
    '''
    def __init__(self):
        self.transactions:    dict[str, paystack.VerifyTransaction] = {}
        self.initialized:     list[InitializeCall]                  = []
        self.verified:        list[str]                             = []
        self.fail_initialize: bool                                  = False
        self.fail_verify:     bool                                  = False
        self.next_id:         int                                   = 0

    def initialize_transaction(self, email: str, amount_minor_units: int, metadata: base.JSONObject, callback_url: str, err: base.ErrorSink) -> paystack.InitializeTransaction:
        result = paystack.InitializeTransaction()
        if self.fail_initialize:
            err.msg_list.append('Paystack request POST transaction/initialize returned HTTP 401')
            result.details = {'status': False, 'message': 'Invalid key'}
            return result

        self.next_id += 1
        reference     = f'ref_{self.next_id}'
        self.initialized.append(InitializeCall(email=email, amount_minor_units=amount_minor_units, metadata=dict(metadata), callback_url=callback_url))
        self.transactions[reference] = paystack.VerifyTransaction(success            = True,
                                                                  status             = 'abandoned',
                                                                  reference          = reference,
                                                                  amount_minor_units = amount_minor_units,
                                                                  metadata           = dict(metadata))
        result.success           = True
        result.reference         = reference
        result.authorization_url = f'https://checkout.paystack.com/{reference}'
        return result

    def add(self, reference: str, amount_minor_units: int, metadata: base.JSONObject, status: str = 'success'):
        self.transactions[reference] = paystack.VerifyTransaction(success            = True,
                                                                  status             = status,
                                                                  reference          = reference,
                                                                  amount_minor_units = amount_minor_units,
                                                                  metadata           = metadata)

    def complete(self, reference: str):
        self.transactions[reference].status = paystack.TRANSACTION_SUCCESS

    def verify_transaction(self, reference: str, err: base.ErrorSink) -> paystack.VerifyTransaction:
        self.verified.append(reference)
        if self.fail_verify:
            err.msg_list.append(f'Paystack request GET transaction/verify/{reference} failed: Connection aborted')
            return paystack.VerifyTransaction(details={'message': 'Connection aborted'})
        if reference not in self.transactions:
            err.msg_list.append(f'Paystack request GET transaction/verify/{reference} returned HTTP 400')
            return paystack.VerifyTransaction(details={'status': False, 'message': 'Transaction reference not found'})
        return self.transactions[reference]

def make_test_settings() -> server.Settings:
    result = server.Settings(paystack_secret                 = TEST_SECRET,
                             app_scheme                      = 'joki',
                             app_name                        = 'joki',
                             base_url                        = 'https://api.example.com/',
                             subscription_days               = TEST_DAYS,
                             subscription_amount_minor_units = TEST_AMOUNT)
    return result

@dataclasses.dataclass
class TestingContext:
    """
    Sets up a database with the necessary tables and flask instance that you can simulate HTTP
    requests to, to target the subscription backend routes. This class is designed to be used in a
    `with` context such that the DB is closed on scope exit.

    For tests, this means you probably want to supply a in-memory URI-style path to make a transient
    DB that is wiped on scope exit. This means tests have a fresh DB to work with for each `with`
    context and each chunk of tests to execute.
    """

    db:           backend.SetupDBResult
    sql_conn:     sqlite3.Connection
    flask_app:    flask.Flask
    flask_client: werkzeug.Client
    gateway:      FakeGateway
    settings:     server.Settings
    runner:       server.WebhookTaskRunner

    db_path:      str  = ''
    uri:          bool = False

    def __init__(self, db_path: str, uri: bool, settings: server.Settings | None = None):
        self.db_path  = db_path
        self.uri      = uri
        self.gateway  = FakeGateway()
        self.settings = settings if settings else make_test_settings()

    def __enter__(self):
        err     = base.ErrorSink()
        self.db = backend.setup_db(path=self.db_path, uri=self.uri, err=err)
        assert len(err.msg_list) == 0, f'{err.msg_list}'

        self.flask_app    = server.init(testing_mode   = True,
                                        db_path        = self.db_path,
                                        db_path_is_uri = self.uri,
                                        settings       = self.settings,
                                        gateway        = self.gateway)
        self.flask_client = self.flask_app.test_client()
        self.runner       = server.webhook_runner_from_flask_app(self.flask_app)
        assert self.db.sql_conn
        self.sql_conn = self.db.sql_conn
        return self

    def __exit__(self,
                 exc_type: object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        _ = self.runner.wait(timeout_s=10)
        self.sql_conn.close()
        return False

    def pay(self, email: str, device_id: str, app_id: str) -> werkzeug.test.TestResponse:
        result = self.flask_client.post(server.ROUTE_PAY, json={'email': email, 'deviceId': device_id, 'appId': app_id})
        return result

    def status(self, email: str, device_id: str, app_id: str) -> dict[str, typing.Any]:
        response = self.flask_client.get(server.ROUTE_STATUS, query_string={'email': email, 'deviceId': device_id, 'appId': app_id})
        assert response.status_code == 200, f'Response was: {response.data!r}'
        result = typing.cast(dict[str, typing.Any], response.get_json())
        return result

    def verify(self, reference: str) -> werkzeug.test.TestResponse:
        result = self.flask_client.get(f'/verify/{reference}')
        return result

    def callback(self, reference: str | None) -> werkzeug.test.TestResponse:
        query  = {'reference': reference} if reference is not None else {}
        result = self.flask_client.get(server.ROUTE_PAYSTACK_CALLBACK, query_string=query)
        return result

    def webhook(self, raw_body: bytes, signature: str | None) -> werkzeug.test.TestResponse:
        headers = {paystack.SIGNATURE_HEADER: signature} if signature is not None else {}
        result  = self.flask_client.post(server.ROUTE_WEBHOOK_PAYSTACK, data=raw_body, headers=headers, content_type='application/json')
        return result

def freeze_clock(monkeypatch: pytest.MonkeyPatch) -> FrozenClock:
    result = FrozenClock()
    monkeypatch.setattr(base, 'unix_ts_ms_now', result.now)
    return result

def deep_link_query(response: werkzeug.test.TestResponse) -> dict[str, str]:
    assert response.status_code == 302, f'Response was: {response.status_code} {response.data!r}'
    location = urllib.parse.urlsplit(response.headers['Location'])
    assert location.scheme == 'joki'
    assert location.netloc == server.DEEP_LINK_HOST
    result = {k: v[0] for k, v in urllib.parse.parse_qs(location.query, keep_blank_values=True).items()}
    assert result['type'] == 'subscription'
    return result

def charge_success_body(reference: str, amount: int, metadata: base.JSONValue) -> bytes:
    # NOTE: Deliberately not in json.dumps' default formatting, the signature is over these bytes
    result = ('{"event":"charge.success","data":{"reference":"%s","amount":%d,"status":"success","metadata":%s}}'
              % (reference, amount, json.dumps(metadata, separators=(',', ':')))).encode('utf-8')
    return result

def test_base_time_and_identity_helpers():
    assert base.iso8601_from_unix_ts_ms(0)                 == '1970-01-01T00:00:00.000Z'
    assert base.iso8601_from_unix_ts_ms(1_700_000_000_123) == '2023-11-14T22:13:20.123Z'
    assert base.round_unix_ts_ms_to_next_day(1)            == base.MILLISECONDS_IN_DAY
    assert base.round_unix_ts_ms_to_next_day(base.MILLISECONDS_IN_DAY) == base.MILLISECONDS_IN_DAY

    key = backend.make_identity_key('  Jane.Doe@Example.COM ', ' device-1 ', 'app-1')
    assert key.email     == 'jane.doe@example.com'
    assert key.device_id == 'device-1'
    assert key.app_id    == 'app-1'
    assert key.complete()
    assert not backend.make_identity_key('jane@example.com', '', 'app-1').complete()

    err = base.ErrorSink()
    d: base.JSONObject = {'data': 'x', 'name': 1}
    _ = base.json_dict_require_obj(d, 'data', err)
    _ = base.json_dict_require_str(d, 'name', err)
    _ = base.json_dict_require_str(d, 'missing', err)
    assert len(err.msg_list) == 3

def test_backend_reconcile_rules():
    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    key: backend.IdentityKey = backend.make_identity_key('jane@example.com', 'device-1', 'app-1')
    unix_ts_ms: int          = START_UNIX_TS_MS

    def record(reference: str, amount: int = TEST_AMOUNT, email: str = key.email, device_id: str = key.device_id, app_id: str = key.app_id) -> backend.ReconcileOutcome:
        assert db.sql_conn
        payment = backend.VerifiedPayment(reference=reference, amount_minor_units=amount, email=email, device_id=device_id, app_id=app_id)
        result  = backend.record_verified_payment(sql_conn                    = db.sql_conn,
                                                  payment                     = payment,
                                                  expected_amount_minor_units = TEST_AMOUNT,
                                                  subscription_days           = TEST_DAYS,
                                                  unix_ts_ms                  = unix_ts_ms,
                                                  err                         = err)
        assert len(err.msg_list) == 0, f'{err.msg_list}'
        return result

    if 1: # Wrong amount is rejected without a write
        outcome = record('ref_a', amount=TEST_AMOUNT - 1)
        assert outcome.status       == backend.ReconcileStatus.AmountMismatch
        assert outcome.error_code() == 'amount_mismatch'
        assert not outcome.ok()
        assert not backend.get_subscription(db.sql_conn, key).found

    if 1: # Metadata that doesn't identify a subscription is rejected without a write
        outcome = record('ref_a', app_id='')
        assert outcome.status       == backend.ReconcileStatus.IncompleteMetadata
        assert outcome.error_code() == 'incomplete_metadata'
        assert len(backend.get_subscriptions_list(db.sql_conn)) == 0

    if 1: # First payment activates from now
        outcome = record('ref_a', email=' JANE@example.com ')
        assert outcome.status            == backend.ReconcileStatus.Success
        assert outcome.expiry_unix_ts_ms == START_UNIX_TS_MS + SUBSCRIPTION_MS
        assert outcome.key               == key

        row = backend.get_subscription(db.sql_conn, key)
        assert row.found and row.active
        assert row.expiry_unix_ts_ms  == START_UNIX_TS_MS + SUBSCRIPTION_MS
        assert row.last_ref           == 'ref_a'
        assert row.created_unix_ts_ms == START_UNIX_TS_MS

    if 1: # Same reference reported again (a day later, by another channel) changes nothing
        unix_ts_ms += base.MILLISECONDS_IN_DAY
        outcome     = record('ref_a')
        assert outcome.status            == backend.ReconcileStatus.AlreadyApplied
        assert outcome.ok()
        assert outcome.expiry_unix_ts_ms == START_UNIX_TS_MS + SUBSCRIPTION_MS
        assert backend.get_subscription(db.sql_conn, key).updated_unix_ts_ms == START_UNIX_TS_MS

    if 1: # A different reference while active extends from the current expiry
        outcome = record('ref_b')
        assert outcome.status            == backend.ReconcileStatus.Success
        assert outcome.expiry_unix_ts_ms == START_UNIX_TS_MS + (2 * SUBSCRIPTION_MS)
        assert backend.get_subscription(db.sql_conn, key).last_ref == 'ref_b'

    if 1: # After lapsing, a new payment starts from now again
        unix_ts_ms = START_UNIX_TS_MS + (2 * SUBSCRIPTION_MS) + base.MILLISECONDS_IN_DAY
        outcome    = record('ref_c')
        assert outcome.status            == backend.ReconcileStatus.Success
        assert outcome.expiry_unix_ts_ms == unix_ts_ms + SUBSCRIPTION_MS

    if 1: # References applied before the lapse are never applied again
        for reference in ['ref_a', 'ref_b']:
            outcome = record(reference)
            assert outcome.status            == backend.ReconcileStatus.AlreadyApplied
            assert outcome.expiry_unix_ts_ms == unix_ts_ms + SUBSCRIPTION_MS

        row = backend.get_subscription(db.sql_conn, key)
        assert row.expiry_unix_ts_ms == unix_ts_ms + SUBSCRIPTION_MS
        assert row.last_ref          == 'ref_c'
        assert row.applied_refs      == ['ref_a', 'ref_b', 'ref_c']

    if 1: # Activation never shortens an expiry and refuses one in the past
        current_expiry = unix_ts_ms + SUBSCRIPTION_MS
        with base.SQLTransaction(db.sql_conn) as tx:
            assert backend.activate_tx(tx, key, unix_ts_ms + 1000, 'ref_old', unix_ts_ms, err)
        assert backend.get_subscription(db.sql_conn, key).expiry_unix_ts_ms == current_expiry

        with base.SQLTransaction(db.sql_conn) as tx:
            assert not backend.activate_tx(tx, key, unix_ts_ms - 1000, 'ref_past', unix_ts_ms, err)
        assert len(err.msg_list) == 1
        assert backend.get_subscription(db.sql_conn, key).last_ref == 'ref_old'

    db.sql_conn.close()

def test_backend_redelivery_converges():
    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    def record(key: backend.IdentityKey, reference: str, unix_ts_ms: int) -> backend.ReconcileOutcome:
        payment = backend.VerifiedPayment(reference=reference, amount_minor_units=TEST_AMOUNT, email=key.email, device_id=key.device_id, app_id=key.app_id)
        result  = backend.record_verified_payment(sql_conn                    = db.sql_conn,
                                                  payment                     = payment,
                                                  expected_amount_minor_units = TEST_AMOUNT,
                                                  subscription_days           = TEST_DAYS,
                                                  unix_ts_ms                  = unix_ts_ms,
                                                  err                         = err)
        assert len(err.msg_list) == 0, f'{err.msg_list}'
        return result

    if 1: # Two payments delivered interleaved by every channel grant exactly two periods
        key      = backend.make_identity_key('ivy@example.com', 'device-1', 'app-1')
        statuses = [record(key, reference, START_UNIX_TS_MS).status for reference in ['ref_a', 'ref_b', 'ref_a', 'ref_b', 'ref_a', 'ref_b']]
        assert statuses == [backend.ReconcileStatus.Success, backend.ReconcileStatus.Success] + [backend.ReconcileStatus.AlreadyApplied] * 4

        row = backend.get_subscription(db.sql_conn, key)
        assert row.expiry_unix_ts_ms == START_UNIX_TS_MS + (2 * SUBSCRIPTION_MS)
        assert row.applied_refs      == ['ref_a', 'ref_b']

    if 1: # The other delivery order lands on the same expiry
        key = backend.make_identity_key('ivy@example.com', 'device-2', 'app-1')
        for reference in ['ref_d', 'ref_c', 'ref_d', 'ref_c']:
            _ = record(key, reference, START_UNIX_TS_MS)
        assert backend.get_subscription(db.sql_conn, key).expiry_unix_ts_ms == START_UNIX_TS_MS + (2 * SUBSCRIPTION_MS)

    if 1: # Replaying a payment after its subscription lapsed does not revive it
        key    = backend.make_identity_key('ivy@example.com', 'device-3', 'app-1')
        expiry = START_UNIX_TS_MS + SUBSCRIPTION_MS
        assert record(key, 'ref_once', START_UNIX_TS_MS).status == backend.ReconcileStatus.Success

        later   = START_UNIX_TS_MS + (31 * base.MILLISECONDS_IN_DAY)
        outcome = record(key, 'ref_once', later)
        assert outcome.status            == backend.ReconcileStatus.AlreadyApplied
        assert outcome.expiry_unix_ts_ms == expiry

        row = backend.get_subscription(db.sql_conn, key)
        assert row.expiry_unix_ts_ms  == expiry
        assert row.updated_unix_ts_ms == START_UNIX_TS_MS
        assert not row.is_active_at(later)

        # Still refused once the user started a new payment, which clears the expiry
        upsert = backend.upsert_pending(db.sql_conn, key, 'ref_next', later)
        assert upsert.status == backend.UpsertPendingStatus.Written

        outcome = record(key, 'ref_once', later)
        assert outcome.status            == backend.ReconcileStatus.AlreadyApplied
        assert outcome.expiry_unix_ts_ms is None
        assert backend.get_subscription(db.sql_conn, key).applied_refs == ['ref_once']

        # The new payment itself goes through
        outcome = record(key, 'ref_next', later)
        assert outcome.status            == backend.ReconcileStatus.Success
        assert outcome.expiry_unix_ts_ms == later + SUBSCRIPTION_MS
        assert backend.get_subscription(db.sql_conn, key).applied_refs == ['ref_once', 'ref_next']

    db.sql_conn.close()

def test_backend_migrate_v1_db(tmp_path: pathlib.Path):
    db_path = str(tmp_path / 'v1.sqlite')
    active  = backend.make_identity_key('old@example.com', 'device-1', 'app-1')
    pending = backend.make_identity_key('old@example.com', 'device-2', 'app-1')
    expiry  = START_UNIX_TS_MS + SUBSCRIPTION_MS

    # NOTE: Lay down the table as the previous version of the backend created it
    conn = sqlite3.connect(db_path)
    _    = conn.executescript('''
        CREATE TABLE subscriptions (
            email              TEXT    NOT NULL,
            device_id          TEXT    NOT NULL,
            app_id             TEXT    NOT NULL,
            active             INTEGER NOT NULL DEFAULT 0,
            expiry_unix_ts_ms  INTEGER,
            last_ref           TEXT,
            created_unix_ts_ms INTEGER NOT NULL,
            updated_unix_ts_ms INTEGER NOT NULL,
            PRIMARY KEY (email, device_id, app_id)
        );
        PRAGMA user_version = 1;
    ''')
    _ = conn.execute('INSERT INTO subscriptions VALUES (?, ?, ?, 1, ?, ?, ?, ?)',
                     (active.email, active.device_id, active.app_id, expiry, 'ref_v1', START_UNIX_TS_MS, START_UNIX_TS_MS))
    _ = conn.execute('INSERT INTO subscriptions VALUES (?, ?, ?, 0, NULL, ?, ?, ?)',
                     (pending.email, pending.device_id, pending.app_id, 'ref_pending', START_UNIX_TS_MS, START_UNIX_TS_MS))
    conn.commit()
    conn.close()

    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=db_path, uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.success and db.sql_conn
    assert db.sql_conn.execute('PRAGMA user_version').fetchone()[0] == 2

    row = backend.get_subscription(db.sql_conn, active)
    assert row.active
    assert row.expiry_unix_ts_ms == expiry
    assert row.applied_refs      == ['ref_v1']
    assert backend.get_subscription(db.sql_conn, pending).applied_refs == []

    if 1: # The migrated reference is recognised as applied, the pending one can still be paid
        for key, reference, status in [(active,  'ref_v1',      backend.ReconcileStatus.AlreadyApplied),
                                       (pending, 'ref_pending', backend.ReconcileStatus.Success)]:
            payment = backend.VerifiedPayment(reference=reference, amount_minor_units=TEST_AMOUNT, email=key.email, device_id=key.device_id, app_id=key.app_id)
            outcome = backend.record_verified_payment(sql_conn                    = db.sql_conn,
                                                      payment                     = payment,
                                                      expected_amount_minor_units = TEST_AMOUNT,
                                                      subscription_days           = TEST_DAYS,
                                                      unix_ts_ms                  = START_UNIX_TS_MS + 1000,
                                                      err                         = err)
            assert outcome.status == status
        assert backend.get_subscription(db.sql_conn, active).expiry_unix_ts_ms == expiry

    db.sql_conn.close()

def test_backend_pending_and_expiry():
    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    key: backend.IdentityKey = backend.make_identity_key('sam@example.com', 'device-2', 'app-1')
    expiry: int              = START_UNIX_TS_MS + SUBSCRIPTION_MS

    if 1: # New row is written pending
        upsert = backend.upsert_pending(db.sql_conn, key, 'ref_1', START_UNIX_TS_MS)
        assert upsert.status == backend.UpsertPendingStatus.Written
        assert not upsert.existing.found

        row = backend.get_subscription(db.sql_conn, key)
        assert row.found
        assert not row.active
        assert row.expiry_unix_ts_ms is None
        assert row.last_ref == 'ref_1'

    if 1: # Re-initiating before paying replaces the pending reference
        upsert = backend.upsert_pending(db.sql_conn, key, 'ref_2', START_UNIX_TS_MS + 1000)
        assert upsert.status == backend.UpsertPendingStatus.Written
        row = backend.get_subscription(db.sql_conn, key)
        assert row.last_ref           == 'ref_2'
        assert row.created_unix_ts_ms == START_UNIX_TS_MS

    if 1: # An active subscription is never overwritten by a pending write
        with base.SQLTransaction(db.sql_conn) as tx:
            assert backend.activate_tx(tx, key, expiry, 'ref_2', START_UNIX_TS_MS, err)
        upsert = backend.upsert_pending(db.sql_conn, key, 'ref_3', START_UNIX_TS_MS + 2000)
        assert upsert.status                     == backend.UpsertPendingStatus.Conflict
        assert upsert.existing.expiry_unix_ts_ms == expiry

        row = backend.get_subscription(db.sql_conn, key)
        assert row.active
        assert row.expiry_unix_ts_ms == expiry
        assert row.last_ref          == 'ref_2'

    if 1: # Maintenance clears the flag once the expiry has passed, exactly once
        assert backend.expire_subscriptions(db.sql_conn, expiry - 1) == 0
        assert backend.expire_subscriptions(db.sql_conn, expiry)     == 1
        assert backend.expire_subscriptions(db.sql_conn, expiry)     == 0
        row = backend.get_subscription(db.sql_conn, key)
        assert not row.active
        assert row.expiry_unix_ts_ms == expiry
        assert row.last_ref          == 'ref_2'

    if 1: # Once lapsed a new pending write goes through
        upsert = backend.upsert_pending(db.sql_conn, key, 'ref_4', expiry + 1)
        assert upsert.status == backend.UpsertPendingStatus.Written
        assert backend.get_subscription(db.sql_conn, key).expiry_unix_ts_ms is None

    info = backend.db_info_string(db.sql_conn, db.path, expiry + 1, err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert 'Subscriptions:           1' in info
    db.sql_conn.close()

def test_backend_concurrent_reconcile_same_reference(tmp_path: pathlib.Path):
    # Callback, poll and webhook racing on the same payment must converge to one 30 day grant
    db_path                   = str(tmp_path / 'race.sqlite')
    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=db_path, uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    thread_count                            = 4
    barrier                                 = threading.Barrier(thread_count)
    lock                                    = threading.Lock()
    outcomes: list[backend.ReconcileOutcome] = []
    payment = backend.VerifiedPayment(reference='ref_race', amount_minor_units=TEST_AMOUNT, email='race@example.com', device_id='d', app_id='a')

    def apply():
        thread_err = base.ErrorSink()
        _ = barrier.wait()
        with backend.OpenDBAtPath(db_path) as conn:
            outcome = backend.record_verified_payment(sql_conn                    = conn.sql_conn,
                                                      payment                     = payment,
                                                      expected_amount_minor_units = TEST_AMOUNT,
                                                      subscription_days           = TEST_DAYS,
                                                      unix_ts_ms                  = START_UNIX_TS_MS,
                                                      err                         = thread_err)
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=apply) for _ in range(thread_count)]
    for it in threads:
        it.start()
    for it in threads:
        it.join(timeout=30)

    assert len(outcomes) == thread_count
    assert sum(1 for it in outcomes if it.status == backend.ReconcileStatus.Success)        == 1
    assert sum(1 for it in outcomes if it.status == backend.ReconcileStatus.AlreadyApplied) == thread_count - 1
    assert all(it.expiry_unix_ts_ms == START_UNIX_TS_MS + SUBSCRIPTION_MS for it in outcomes)

    row = backend.get_subscription(db.sql_conn, backend.make_identity_key('race@example.com', 'd', 'a'))
    assert row.expiry_unix_ts_ms == START_UNIX_TS_MS + SUBSCRIPTION_MS
    db.sql_conn.close()

def test_server_health_and_status_validation(monkeypatch):
    _ = freeze_clock(monkeypatch)
    with TestingContext(db_path='file:test_server_status_db?mode=memory&cache=shared', uri=True) as ctx:
        response = ctx.flask_client.get(server.ROUTE_HEALTH)
        assert response.status_code     == 200
        assert response.get_json()      == {'ok': True, 'ts': base.iso8601_from_unix_ts_ms(START_UNIX_TS_MS)}

        # Missing every field
        response = ctx.flask_client.get(server.ROUTE_STATUS)
        body     = response.get_json()
        assert response.status_code == 400
        assert body['error']        == server.ErrorCode.ValidationError.value
        assert len(body['msg'])     == 3

        # Blank field is as good as missing
        response = ctx.flask_client.get(server.ROUTE_STATUS, query_string={'email': 'a@b.c', 'deviceId': ' ', 'appId': 'app'})
        assert response.status_code == 400

        # Never paid
        assert ctx.status('nobody@example.com', 'device-1', 'app-1') == {'active': False}

def test_server_pay_verify_status_flow(monkeypatch):
    clock = freeze_clock(monkeypatch)
    with TestingContext(db_path='file:test_server_flow_db?mode=memory&cache=shared', uri=True) as ctx:
        expires_at: str = base.iso8601_from_unix_ts_ms(START_UNIX_TS_MS + SUBSCRIPTION_MS)

        if 1: # Initiate the payment
            response = ctx.pay(' Jane@Example.com', 'device-1', 'app-1')
            body     = response.get_json()
            assert response.status_code     == 200, f'Response was: {body}'
            assert body['ok']               == True
            assert body['reference']        == 'ref_1'
            assert body['authorizationUrl'] == 'https://checkout.paystack.com/ref_1'

            assert len(ctx.gateway.initialized) == 1
            call = ctx.gateway.initialized[0]
            assert call.email              == 'jane@example.com'
            assert call.amount_minor_units == TEST_AMOUNT
            assert call.callback_url       == 'https://api.example.com/paystack/callback'
            assert call.metadata           == {'email': 'jane@example.com', 'deviceId': 'device-1', 'appId': 'app-1', 'app': 'joki'}

            row = backend.get_subscription(ctx.sql_conn, backend.make_identity_key('jane@example.com', 'device-1', 'app-1'))
            assert row.found and not row.active
            assert row.last_ref == 'ref_1'
            assert ctx.status('jane@example.com', 'device-1', 'app-1') == {'active': False}

        if 1: # Poll before the user paid
            response = ctx.verify('ref_1')
            assert response.status_code == 200
            assert response.get_json()  == {'ok': False, 'error': 'not_success'}

        if 1: # User pays, the app polls
            ctx.gateway.complete('ref_1')
            response = ctx.verify('ref_1')
            assert response.status_code == 200
            assert response.get_json()  == {'ok': True, 'expiresAt': expires_at}
            assert ctx.status('JANE@example.com', 'device-1', 'app-1') == {'active': True, 'expiresAt': expires_at}

        if 1: # The browser callback and the webhook arrive later for the same payment
            clock.advance_days(1)
            query = deep_link_query(ctx.callback('ref_1'))
            assert query['status']    == 'success'
            assert query['reference'] == 'ref_1'

            metadata = ctx.gateway.initialized[0].metadata
            raw_body = charge_success_body('ref_1', TEST_AMOUNT, metadata)
            response = ctx.webhook(raw_body, paystack.sign_webhook_body(raw_body, TEST_SECRET))
            assert response.status_code == 200
            assert ctx.runner.wait(timeout_s=10)

            response = ctx.verify('ref_1')
            assert response.get_json() == {'ok': True, 'expiresAt': expires_at}
            assert ctx.status('jane@example.com', 'device-1', 'app-1') == {'active': True, 'expiresAt': expires_at}

        if 1: # Other devices and apps are separate subscriptions
            assert ctx.status('jane@example.com', 'device-2', 'app-1') == {'active': False}
            assert ctx.status('jane@example.com', 'device-1', 'app-2') == {'active': False}

        if 1: # Entitlement is gated on the expiry at query time even before maintenance runs
            clock.unix_ts_ms = START_UNIX_TS_MS + SUBSCRIPTION_MS
            assert ctx.status('jane@example.com', 'device-1', 'app-1') == {'active': False}

            # Lapsed subscriptions can be paid for again
            response = ctx.pay('jane@example.com', 'device-1', 'app-1')
            assert response.status_code == 200, f'Response was: {response.get_json()}'

def test_server_pay_conflict_and_stacking(monkeypatch):
    clock = freeze_clock(monkeypatch)
    with TestingContext(db_path='file:test_server_conflict_db?mode=memory&cache=shared', uri=True) as ctx:
        first_expiry: str = base.iso8601_from_unix_ts_ms(START_UNIX_TS_MS + SUBSCRIPTION_MS)

        response = ctx.pay('kim@example.com', 'device-1', 'app-1')
        assert response.status_code == 200
        ctx.gateway.complete('ref_1')
        assert ctx.verify('ref_1').get_json() == {'ok': True, 'expiresAt': first_expiry}

        if 1: # Paying while active is refused before Paystack is contacted
            response = ctx.pay('kim@example.com', 'device-1', 'app-1')
            body     = response.get_json()
            assert response.status_code       == 409
            assert body['ok']                 == False
            assert body['error']              == server.ErrorCode.Conflict.value
            assert body['details']            == {'expiresAt': first_expiry}
            assert len(ctx.gateway.initialized) == 1

            row = backend.get_subscription(ctx.sql_conn, backend.make_identity_key('kim@example.com', 'device-1', 'app-1'))
            assert row.active
            assert row.last_ref == 'ref_1'

        if 1: # A second, distinct payment (e.g. started from another client) stacks onto the first
            ctx.gateway.add('ref_other', TEST_AMOUNT, {'email': 'kim@example.com', 'deviceId': 'device-1', 'appId': 'app-1'})
            second_expiry = base.iso8601_from_unix_ts_ms(START_UNIX_TS_MS + (2 * SUBSCRIPTION_MS))
            assert ctx.verify('ref_other').get_json()                    == {'ok': True, 'expiresAt': second_expiry}
            assert ctx.verify('ref_other').get_json()                    == {'ok': True, 'expiresAt': second_expiry}
            assert deep_link_query(ctx.callback('ref_other'))['status']  == 'success'
            assert ctx.status('kim@example.com', 'device-1', 'app-1')    == {'active': True, 'expiresAt': second_expiry}

        if 1: # The first payment reported again after the second one does not stack a third period
            clock.advance_days(1)
            assert ctx.verify('ref_1').get_json()                        == {'ok': True, 'expiresAt': second_expiry}
            assert deep_link_query(ctx.callback('ref_1'))['status']      == 'success'
            assert ctx.verify('ref_other').get_json()                    == {'ok': True, 'expiresAt': second_expiry}
            assert ctx.status('kim@example.com', 'device-1', 'app-1')    == {'active': True, 'expiresAt': second_expiry}

        if 1: # Once lapsed, replaying either payment does not revive the subscription
            clock.unix_ts_ms = START_UNIX_TS_MS + (2 * SUBSCRIPTION_MS) + base.MILLISECONDS_IN_DAY
            for reference in ['ref_1', 'ref_other']:
                assert ctx.verify(reference).get_json() == {'ok': True, 'expiresAt': second_expiry}
            assert ctx.status('kim@example.com', 'device-1', 'app-1') == {'active': False}

            row = backend.get_subscription(ctx.sql_conn, backend.make_identity_key('kim@example.com', 'device-1', 'app-1'))
            assert row.expiry_unix_ts_ms == START_UNIX_TS_MS + (2 * SUBSCRIPTION_MS)
            assert row.applied_refs      == ['ref_1', 'ref_other']

            # A fresh payment is needed, the replays were not mistaken for one
            response = ctx.pay('kim@example.com', 'device-1', 'app-1')
            assert response.status_code == 200, f'Response was: {response.get_json()}'
            assert ctx.verify('ref_1').get_json() == {'ok': True, 'expiresAt': None}

def test_server_verify_db_failure(monkeypatch):
    _ = freeze_clock(monkeypatch)
    with TestingContext(db_path='file:test_server_verify_db_failure_db?mode=memory&cache=shared', uri=True) as ctx:
        ctx.gateway.add('ref_locked', TEST_AMOUNT, {'email': 'lou@example.com', 'deviceId': 'device-1', 'appId': 'app-1'})

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError('database is locked')
        monkeypatch.setattr(backend, 'record_verified_payment', locked)

        response = ctx.verify('ref_locked')
        body     = response.get_json()
        assert response.status_code == 500
        assert response.is_json
        assert body['ok']           == False
        assert body['error']        == server.ErrorCode.GatewayError.value

        assert deep_link_query(ctx.callback('ref_locked'))['status'] == 'error'
        assert ctx.status('lou@example.com', 'device-1', 'app-1')   == {'active': False}

def test_server_verify_rejections(monkeypatch):
    _ = freeze_clock(monkeypatch)
    with TestingContext(db_path='file:test_server_rejections_db?mode=memory&cache=shared', uri=True) as ctx:
        metadata: base.JSONObject = {'email': 'lee@example.com', 'deviceId': 'device-1', 'appId': 'app-1'}
        ctx.gateway.add('ref_cheap',     TEST_AMOUNT // 2, metadata)
        ctx.gateway.add('ref_anonymous', TEST_AMOUNT,      {'email': 'lee@example.com', 'deviceId': 'device-1'})
        ctx.gateway.add('ref_failed',    TEST_AMOUNT,      metadata, status='failed')

        expected = [
            ('ref_cheap',     'amount_mismatch'),
            ('ref_anonymous', 'incomplete_metadata'),
            ('ref_failed',    'not_success'),
        ]
        for reference, error in expected:
            response = ctx.verify(reference)
            assert response.status_code == 200
            assert response.get_json()  == {'ok': False, 'error': error}

            query = deep_link_query(ctx.callback(reference))
            assert query['status']    == 'failed'
            assert query['reference'] == reference

        assert ctx.status('lee@example.com', 'device-1', 'app-1') == {'active': False}
        assert len(backend.get_subscriptions_list(ctx.sql_conn)) == 0

def test_server_gateway_and_validation_errors(monkeypatch):
    _ = freeze_clock(monkeypatch)
    with TestingContext(db_path='file:test_server_errors_db?mode=memory&cache=shared', uri=True) as ctx:
        if 1: # Bad request bodies
            response = ctx.flask_client.post(server.ROUTE_PAY, data=b'{not json', content_type='application/json')
            assert response.status_code         == 400
            assert response.get_json()['error'] == server.ErrorCode.ValidationError.value

            response = ctx.flask_client.post(server.ROUTE_PAY, json=['email'])
            assert response.status_code == 400

            response = ctx.flask_client.post(server.ROUTE_PAY, json={'email': 'a@b.c', 'deviceId': 12})
            body     = response.get_json()
            assert response.status_code == 400
            assert len(body['msg'])     == 2 # deviceId is not a string, appId is missing
            assert len(ctx.gateway.initialized) == 0

        if 1: # Paystack refuses to initialise, its payload is passed through
            ctx.gateway.fail_initialize = True
            response = ctx.pay('max@example.com', 'device-1', 'app-1')
            body     = response.get_json()
            assert response.status_code == 500
            assert body['error']        == server.ErrorCode.GatewayError.value
            assert body['details']      == {'status': False, 'message': 'Invalid key'}
            assert len(backend.get_subscriptions_list(ctx.sql_conn)) == 0
            ctx.gateway.fail_initialize = False

        if 1: # Unknown reference and an unreachable Paystack
            response = ctx.verify('ref_unknown')
            body     = response.get_json()
            assert response.status_code == 500
            assert body['ok']           == False
            assert body['error']        == server.ErrorCode.GatewayError.value
            assert body['details']      == {'status': False, 'message': 'Transaction reference not found'}
            assert deep_link_query(ctx.callback('ref_unknown'))['status'] == 'error'

            ctx.gateway.fail_verify = True
            assert ctx.verify('ref_unknown').get_json()['details'] == {'message': 'Connection aborted'}
            ctx.gateway.fail_verify = False

        if 1: # The browser is always sent back to the app
            query = deep_link_query(ctx.callback(None))
            assert query['status']    == 'error'
            assert query['reference'] == ''
            assert ctx.gateway.verified.count('') == 0

    # Misconfigured deployment
    settings          = make_test_settings()
    settings.base_url = ''
    with TestingContext(db_path='file:test_server_config_db?mode=memory&cache=shared', uri=True, settings=settings) as ctx:
        response = ctx.pay('max@example.com', 'device-1', 'app-1')
        assert response.status_code         == 500
        assert response.get_json()['error'] == server.ErrorCode.ConfigError.value
        assert len(ctx.gateway.initialized) == 0

def test_server_webhook(monkeypatch):
    _ = freeze_clock(monkeypatch)
    with TestingContext(db_path='file:test_server_webhook_db?mode=memory&cache=shared', uri=True) as ctx:
        key: backend.IdentityKey  = backend.make_identity_key('ada@example.com', 'device-9', 'app-1')
        metadata: base.JSONObject = {'email': key.email, 'deviceId': key.device_id, 'appId': key.app_id, 'app': 'joki'}
        raw_body: bytes           = charge_success_body('ref_hook', TEST_AMOUNT, metadata)

        if 1: # Forged, missing or wrongly keyed signatures are refused and nothing is scheduled
            for signature in ['00' * 64, '', None, paystack.sign_webhook_body(raw_body, 'sk_test_wrong')]:
                response = ctx.webhook(raw_body, signature)
                assert response.status_code         == 403
                assert response.get_json()['error'] == server.ErrorCode.AuthError.value
            assert len(ctx.runner.threads) == 0

        if 1: # Signing the re-serialised JSON instead of the received bytes does not verify
            reserialised = json.dumps(json.loads(raw_body)).encode('utf-8')
            assert reserialised != raw_body
            response = ctx.webhook(raw_body, paystack.sign_webhook_body(reserialised, TEST_SECRET))
            assert response.status_code == 403
            assert not backend.get_subscription(ctx.sql_conn, key).found

        if 1: # Authentic event activates the subscription in the background
            response = ctx.webhook(raw_body, paystack.sign_webhook_body(raw_body, TEST_SECRET).upper())
            assert response.status_code == 200
            assert ctx.runner.wait(timeout_s=10)
            assert ctx.status(key.email, key.device_id, key.app_id) == {'active': True, 'expiresAt': base.iso8601_from_unix_ts_ms(START_UNIX_TS_MS + SUBSCRIPTION_MS)}

            # Paystack redelivers, nothing changes
            response = ctx.webhook(raw_body, paystack.sign_webhook_body(raw_body, TEST_SECRET))
            assert response.status_code == 200
            assert ctx.runner.wait(timeout_s=10)
            row = backend.get_subscription(ctx.sql_conn, key)
            assert row.expiry_unix_ts_ms  == START_UNIX_TS_MS + SUBSCRIPTION_MS
            assert row.last_ref           == 'ref_hook'

        if 1: # Metadata sent as a JSON string is understood
            other    = backend.make_identity_key('bo@example.com', 'device-1', 'app-1')
            body     = charge_success_body('ref_string', TEST_AMOUNT, json.dumps({'email': other.email, 'deviceId': other.device_id, 'appId': other.app_id}))
            response = ctx.webhook(body, paystack.sign_webhook_body(body, TEST_SECRET))
            assert response.status_code == 200
            assert ctx.runner.wait(timeout_s=10)
            assert backend.get_subscription(ctx.sql_conn, other).active

        if 1: # Authentic but unusable events are acknowledged and ignored
            unpaid = backend.make_identity_key('cy@example.com', 'device-1', 'app-1')
            bodies = [
                b'{"event":"transfer.success","data":{"reference":"ref_transfer"}}',
                charge_success_body('ref_cheap', 100, {'email': unpaid.email, 'deviceId': unpaid.device_id, 'appId': unpaid.app_id}),
                b'{"event":"charge.success","data":"nope"}',
                b'not json at all',
            ]
            for body in bodies:
                response = ctx.webhook(body, paystack.sign_webhook_body(body, TEST_SECRET))
                assert response.status_code == 200
            assert ctx.runner.wait(timeout_s=10)
            assert not backend.get_subscription(ctx.sql_conn, unpaid).found
            assert len(backend.get_subscriptions_list(ctx.sql_conn)) == 2

def test_server_handle_webhook_event(monkeypatch):
    clock = freeze_clock(monkeypatch)
    with TestingContext(db_path='file:test_server_webhook_event_db?mode=memory&cache=shared', uri=True) as ctx:
        metadata = {'email': 'ed@example.com', 'deviceId': 'device-1', 'appId': 'app-1'}
        outcome  = server.handle_webhook_event(charge_success_body('ref_ed', TEST_AMOUNT, metadata), ctx.settings, ctx.db_path, ctx.uri)
        assert outcome is not None
        assert outcome.status == backend.ReconcileStatus.Success

        outcome = server.handle_webhook_event(charge_success_body('ref_ed', TEST_AMOUNT, metadata), ctx.settings, ctx.db_path, ctx.uri)
        assert outcome is not None
        assert outcome.status == backend.ReconcileStatus.AlreadyApplied

        outcome = server.handle_webhook_event(charge_success_body('ref_ed2', TEST_AMOUNT + 1, metadata), ctx.settings, ctx.db_path, ctx.uri)
        assert outcome is not None
        assert outcome.status == backend.ReconcileStatus.AmountMismatch

        # Paystack redelivering long after the subscription lapsed
        clock.advance_days(TEST_DAYS + 1)
        outcome = server.handle_webhook_event(charge_success_body('ref_ed', TEST_AMOUNT, metadata), ctx.settings, ctx.db_path, ctx.uri)
        assert outcome is not None
        assert outcome.status            == backend.ReconcileStatus.AlreadyApplied
        assert outcome.expiry_unix_ts_ms == START_UNIX_TS_MS + SUBSCRIPTION_MS
        assert ctx.status('ed@example.com', 'device-1', 'app-1') == {'active': False}

        assert server.handle_webhook_event(b'{"event":"subscription.create","data":{}}', ctx.settings, ctx.db_path, ctx.uri) is None
        assert server.handle_webhook_event(b'[]', ctx.settings, ctx.db_path, ctx.uri) is None

def test_webhook_task_runner_contains_failures():
    runner = server.WebhookTaskRunner()
    ran: list[int] = []

    def fail():
        raise RuntimeError('boom')

    _ = runner.submit(fail)
    _ = runner.submit(ran.append, 1)
    assert runner.wait(timeout_s=10)
    assert ran == [1]

@dataclasses.dataclass
class FakeHTTPResponse:
    status: int
    data:   bytes

@dataclasses.dataclass
class FakeHTTPRequest:
    method:  str
    url:     str
    body:    bytes | None
    headers: dict[str, str]

class FakeHTTP:
    '''Replays canned responses in place of a urllib3.PoolManager'''
    def __init__(self, responses: list[FakeHTTPResponse | Exception]):
        self.responses: list[FakeHTTPResponse | Exception] = responses
        self.requests:  list[FakeHTTPRequest]              = []

    def request(self, method: str, url: str, body: bytes | None = None, headers: dict[str, str] | None = None) -> FakeHTTPResponse:
        self.requests.append(FakeHTTPRequest(method=method, url=url, body=body, headers=headers or {}))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

def make_paystack_client(responses: list[FakeHTTPResponse | Exception]) -> tuple[paystack.Client, FakeHTTP]:
    http   = FakeHTTP(responses)
    client = paystack.Client(secret_key=TEST_SECRET, http=typing.cast(urllib3.PoolManager, http))
    return client, http

def test_paystack_client_initialize():
    body = {'status': True, 'message': 'Authorization URL created',
            'data': {'authorization_url': 'https://checkout.paystack.com/abc', 'access_code': 'abc', 'reference': 'ref_abc'}}
    client, http = make_paystack_client([FakeHTTPResponse(status=200, data=json.dumps(body).encode('utf-8'))])

    err      = base.ErrorSink()
    metadata = {'email': 'jane@example.com', 'deviceId': 'd', 'appId': 'a', 'app': 'joki'}
    result   = client.initialize_transaction('jane@example.com', TEST_AMOUNT, typing.cast(base.JSONObject, metadata), 'https://api.example.com/paystack/callback', err)
    assert not err.has(), err.build()
    assert result.success
    assert result.authorization_url == 'https://checkout.paystack.com/abc'
    assert result.reference         == 'ref_abc'

    assert len(http.requests) == 1
    request = http.requests[0]
    assert request.method                   == 'POST'
    assert request.url                      == 'https://api.paystack.co/transaction/initialize'
    assert request.headers['Authorization'] == f'Bearer {TEST_SECRET}'
    assert request.body is not None
    assert json.loads(request.body) == {'email': 'jane@example.com', 'amount': TEST_AMOUNT, 'metadata': metadata,
                                        'callback_url': 'https://api.example.com/paystack/callback'}

def test_paystack_client_verify():
    body = {'status': True, 'message': 'Verification successful',
            'data': {'status': 'success', 'reference': 'ref/1', 'amount': TEST_AMOUNT,
                     'metadata': json.dumps({'email': 'jane@example.com', 'deviceId': 'd', 'appId': 'a'})}}
    client, http = make_paystack_client([FakeHTTPResponse(status=200, data=json.dumps(body).encode('utf-8'))])

    err    = base.ErrorSink()
    result = client.verify_transaction('ref/1', err)
    assert not err.has(), err.build()
    assert result.success
    assert result.status             == 'success'
    assert result.reference          == 'ref/1'
    assert result.amount_minor_units == TEST_AMOUNT
    assert result.metadata           == {'email': 'jane@example.com', 'deviceId': 'd', 'appId': 'a'}
    assert http.requests[0].method   == 'GET'
    assert http.requests[0].url      == 'https://api.paystack.co/transaction/verify/ref%2F1'
    assert http.requests[0].body is None

def test_paystack_client_failures():
    if 1: # Non-2xx with a JSON body passes the body through as the details
        body         = {'status': False, 'message': 'Transaction reference not found'}
        client, _    = make_paystack_client([FakeHTTPResponse(status=400, data=json.dumps(body).encode('utf-8'))])
        err          = base.ErrorSink()
        result       = client.verify_transaction('ref_missing', err)
        assert not result.success
        assert err.has()
        assert result.details == body

    if 1: # Network failure
        client, _ = make_paystack_client([urllib3.exceptions.ProtocolError('Connection aborted')])
        err       = base.ErrorSink()
        result    = client.initialize_transaction('a@b.c', TEST_AMOUNT, {}, 'https://x/paystack/callback', err)
        assert not result.success
        assert err.has()
        assert 'Connection aborted' in str(result.details['message'])

    if 1: # 2xx that isn't JSON
        client, _ = make_paystack_client([FakeHTTPResponse(status=200, data=b'<html>gateway timeout</html>')])
        err       = base.ErrorSink()
        result    = client.verify_transaction('ref_x', err)
        assert not result.success
        assert err.has()
        assert 'message' in result.details

    if 1: # 2xx missing the fields we rely on
        body      = {'status': True, 'data': {'authorization_url': 'https://checkout.paystack.com/abc'}}
        client, _ = make_paystack_client([FakeHTTPResponse(status=200, data=json.dumps(body).encode('utf-8'))])
        err       = base.ErrorSink()
        result    = client.initialize_transaction('a@b.c', TEST_AMOUNT, {}, 'https://x/paystack/callback', err)
        assert not result.success
        assert err.has()
        assert result.details == body

def test_paystack_metadata_and_amount_parsing():
    assert paystack.parse_metadata({'appId': 'a'})      == {'appId': 'a'}
    assert paystack.parse_metadata('{"appId": "a"}')    == {'appId': 'a'}
    assert paystack.parse_metadata('not json')          == {}
    assert paystack.parse_metadata('[1, 2]')            == {}
    assert paystack.parse_metadata(None)                == {}

    assert paystack.parse_amount(500000)   == 500000
    assert paystack.parse_amount('500000') == 500000
    assert paystack.parse_amount(True)     == -1
    assert paystack.parse_amount(5000.5)   == -1
    assert paystack.parse_amount(None)     == -1

def test_paystack_webhook_signature():
    raw_body  = b'{"event":"charge.success", "data":{"reference":"r"}}'
    signature = paystack.sign_webhook_body(raw_body, TEST_SECRET)
    assert len(signature) == 128
    assert paystack.verify_webhook_signature(raw_body, signature, TEST_SECRET)
    assert paystack.verify_webhook_signature(raw_body, f' {signature.upper()} ', TEST_SECRET)
    assert not paystack.verify_webhook_signature(raw_body + b' ', signature, TEST_SECRET)
    assert not paystack.verify_webhook_signature(raw_body, signature, 'sk_test_other')
    assert not paystack.verify_webhook_signature(raw_body, signature, '')
    assert not paystack.verify_webhook_signature(raw_body, '', TEST_SECRET)

CONFIG_ENV_VARS = [
    'SUB_BACKEND_INI_PATH',
    'SUB_BACKEND_DB_PATH',
    'SUB_BACKEND_DB_PATH_IS_URI',
    'SUB_BACKEND_LOG_PATH',
    'SUB_BACKEND_UNSAFE_LOGGING',
    'SUB_BACKEND_PRINT_TABLES',
    'SUB_BACKEND_PORT',
    'SUB_BACKEND_PAYSTACK_SECRET',
    'SUB_BACKEND_APP_SCHEME',
    'SUB_BACKEND_APP_NAME',
    'SUB_BACKEND_BASE_URL',
    'SUB_BACKEND_SUBSCRIPTION_DAYS',
    'SUB_BACKEND_SUBSCRIPTION_AMOUNT',
]

def test_config_parse_args(monkeypatch, tmp_path: pathlib.Path):
    for it in CONFIG_ENV_VARS:
        monkeypatch.delenv(it, raising=False)

    if 1: # Defaults
        err  = base.ErrorSink()
        args = config.parse_args(err)
        assert not err.has(), err.build()
        assert args.db_path              == 'subscriptions.sqlite'
        assert args.port                 == 5000
        assert args.app_scheme           == 'joki'
        assert args.subscription_days    == 30
        assert args.amount_minor_units() == 500000

    if 1: # .INI values, then environment overrides
        ini_path = tmp_path / 'backend.ini'
        _ = ini_path.write_text('[base]\n'
                                'db_path = /var/lib/sub/db.sqlite\n'
                                'unsafe_logging = true\n'
                                'port = 8080\n'
                                '[paystack]\n'
                                'secret_key = sk_ini\n'
                                'base_url = https://ini.example.com\n'
                                'subscription_days = 7\n'
                                'subscription_amount = 1500\n')
        monkeypatch.setenv('SUB_BACKEND_INI_PATH',        str(ini_path))
        monkeypatch.setenv('SUB_BACKEND_PAYSTACK_SECRET', 'sk_env')
        monkeypatch.setenv('SUB_BACKEND_APP_SCHEME',      'myapp')

        err  = base.ErrorSink()
        args = config.parse_args(err)
        assert not err.has(), err.build()
        assert args.db_path           == '/var/lib/sub/db.sqlite'
        assert args.unsafe_logging    == True
        assert args.port              == 8080
        assert args.paystack_secret   == 'sk_env'
        assert args.base_url          == 'https://ini.example.com'
        assert args.app_scheme        == 'myapp'

        settings = args.server_settings()
        assert settings.subscription_days               == 7
        assert settings.subscription_amount_minor_units == 150000
        assert settings.paystack_secret                 == 'sk_env'

    if 1: # Bad values are reported, not silently defaulted
        monkeypatch.setenv('SUB_BACKEND_SUBSCRIPTION_DAYS',   'thirty')
        monkeypatch.setenv('SUB_BACKEND_SUBSCRIPTION_AMOUNT', '-5')
        err = base.ErrorSink()
        _   = config.parse_args(err)
        assert any('SUB_BACKEND_SUBSCRIPTION_DAYS' in it for it in err.msg_list)
        assert any('amount must be positive' in it for it in err.msg_list)

    if 1: # Missing .INI file
        monkeypatch.setenv('SUB_BACKEND_INI_PATH', str(tmp_path / 'missing.ini'))
        err = base.ErrorSink()
        _   = config.parse_args(err)
        assert err.has()

    if 1: # Boolean flags only accept 0/1
        monkeypatch.delenv('SUB_BACKEND_INI_PATH')
        monkeypatch.setenv('SUB_BACKEND_PRINT_TABLES', 'yes')
        with pytest.raises(ValueError):
            _ = config.parse_args(base.ErrorSink())
