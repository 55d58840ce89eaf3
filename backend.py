'''
The backend is the database layer of the subscription service. It owns the single `subscriptions`
table which holds one row per identity triple (email, device ID, app ID) and the reconciliation
logic that converts a verified Paystack payment into an entitlement on that row.

The same payment can be reported up to three times: by the browser callback, by the client
polling /verify and by the Paystack webhook (which itself is retried until acknowledged). None of
those channels are ordered with respect to each other so every mutation in this file is written
such that re-applying it converges to the same row instead of regressing it.

Every function takes the connection (or an open transaction on it) as an argument. There is no
global handle, the HTTP layer opens a connection per request and tests use an in-memory DB.
'''

import dataclasses
import enum
import json
import logging
import os
import sqlite3
import traceback
import typing

import base

log = logging.Logger('BACKEND')

@dataclasses.dataclass
class IdentityKey:
    '''Unit of subscription entitlement. Construct with `make_identity_key` to normalise it.'''
    email:     str = ''
    device_id: str = ''
    app_id:    str = ''

    def complete(self) -> bool:
        result = len(self.email) > 0 and len(self.device_id) > 0 and len(self.app_id) > 0
        return result

    def log_label(self) -> str:
        result = f'{base.obfuscate(self.email)}/{self.device_id}/{self.app_id}'
        return result

@dataclasses.dataclass
class SubscriptionRow:
    found:              bool        = False
    key:                IdentityKey = dataclasses.field(default_factory=IdentityKey)
    active:             bool        = False
    expiry_unix_ts_ms:  int | None  = None
    last_ref:           str | None  = None
    created_unix_ts_ms: int         = 0
    updated_unix_ts_ms: int         = 0
    applied_refs:       list[str]   = dataclasses.field(default_factory=list) # Every reference that has granted time to this row

    def is_active_at(self, unix_ts_ms: int) -> bool:
        '''A row flagged active only entitles the user while its expiry is strictly in the future'''
        result = self.found and self.active and self.expiry_unix_ts_ms is not None and self.expiry_unix_ts_ms > unix_ts_ms
        return result

class UpsertPendingStatus(enum.Enum):
    Nil      = 0
    Written  = 1
    Conflict = 2 # An active, unexpired subscription exists and was left untouched

@dataclasses.dataclass
class UpsertPendingResult:
    status:   UpsertPendingStatus = UpsertPendingStatus.Nil
    existing: SubscriptionRow     = dataclasses.field(default_factory=SubscriptionRow)

class ReconcileStatus(enum.Enum):
    Nil                = 0
    Success            = 1
    AlreadyApplied     = 2 # Reference was already applied to this row (even if it has since lapsed), nothing was written
    AmountMismatch     = 3
    IncompleteMetadata = 4

@dataclasses.dataclass
class VerifiedPayment:
    '''
    A payment that the caller has confirmed as successful with Paystack, either by calling the
    verify API or by receiving it in an authenticated webhook. The identity fields are the raw
    values from the transaction's metadata and may be empty.
    '''
    reference:          str = ''
    amount_minor_units: int = 0
    email:              str = ''
    device_id:          str = ''
    app_id:             str = ''

@dataclasses.dataclass
class ReconcileOutcome:
    status:            ReconcileStatus = ReconcileStatus.Nil
    key:               IdentityKey     = dataclasses.field(default_factory=IdentityKey)
    expiry_unix_ts_ms: int | None      = None # None when an applied reference is replayed onto a row that was re-initiated since

    def ok(self) -> bool:
        result = self.status == ReconcileStatus.Success or self.status == ReconcileStatus.AlreadyApplied
        return result

    def error_code(self) -> str:
        result = ''
        match self.status:
            case ReconcileStatus.AmountMismatch:     result = 'amount_mismatch'
            case ReconcileStatus.IncompleteMetadata: result = 'incomplete_metadata'
            case _:                                  pass
        return result

@dataclasses.dataclass
class SetupDBResult:
    """
    Returned by setup_db() which opens the DB, creates the tables and keeps the connection open in
    `sql_conn`. The caller must close `sql_conn` when they are done with it.

    The connection is returned instead of closed because tests use an in-memory DB which is wiped
    as soon as the last connection to it is closed.
    """
    path:     str                       = ''
    success:  bool                      = False
    sql_conn: sqlite3.Connection | None = None

@dataclasses.dataclass
class OpenDBAtPath:
    """
    Open a pre-existing DB at the specified path. Use in a `with` context so that the connection is
    closed on scope exit, e.g.:

    with OpenDBAtPath(...) as db:
        # Use db.sql_conn
        pass
    """

    sql_conn: sqlite3.Connection
    def __init__(self, db_path: str, uri: bool = False):
        # NOTE: Writers wait on each other's IMMEDIATE transactions instead of failing instantly
        self.sql_conn = sqlite3.connect(db_path, uri=uri, timeout=15)

    def __enter__(self):
        return self

    def __exit__(self,
                 exc_type:  object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

SubscriptionRowTuple: typing.TypeAlias = tuple[str,        # email
                                               str,        # device_id
                                               str,        # app_id
                                               int,        # active
                                               int | None, # expiry_unix_ts_ms
                                               str | None, # last_ref
                                               int,        # created_unix_ts_ms
                                               int,        # updated_unix_ts_ms
                                               str]        # applied_refs (JSON array)

SQL_SUBSCRIPTION_COLUMNS = 'email, device_id, app_id, active, expiry_unix_ts_ms, last_ref, created_unix_ts_ms, updated_unix_ts_ms, applied_refs'

def make_identity_key(email: str, device_id: str, app_id: str) -> IdentityKey:
    # NOTE: Emails are case-insensitive, the device and app identifiers are opaque and kept as-is
    result = IdentityKey(email=email.strip().lower(), device_id=device_id.strip(), app_id=app_id.strip())
    return result

def subscription_row_from_tuple(row: SubscriptionRowTuple) -> SubscriptionRow:
    result                    = SubscriptionRow()
    result.found              = True
    result.key                = IdentityKey(email=row[0], device_id=row[1], app_id=row[2])
    result.active             = bool(row[3])
    result.expiry_unix_ts_ms  = row[4]
    result.last_ref           = row[5]
    result.created_unix_ts_ms = row[6]
    result.updated_unix_ts_ms = row[7]
    result.applied_refs       = typing.cast(list[str], json.loads(row[8])) if row[8] else []
    return result

def setup_db(path: str, uri: bool, err: base.ErrorSink) -> SetupDBResult:
    result: SetupDBResult = SetupDBResult()
    result.path           = path
    try:
        result.sql_conn = sqlite3.connect(path, uri=uri)
    except Exception as e:
        err.msg_list.append(f'Failed to open/connect to DB at {path}: {e}')
        return result

    with base.SQLTransaction(result.sql_conn) as tx:
        assert tx.cursor is not None
        try:
            _ = tx.cursor.execute('''
                CREATE TABLE IF NOT EXISTS subscriptions (
                    -- Identity triple, email is stored lower-cased
                    email              TEXT    NOT NULL,
                    device_id          TEXT    NOT NULL,
                    app_id             TEXT    NOT NULL,

                    -- Set once a verified payment is reconciled onto the row. Only meaningful while
                    -- `expiry_unix_ts_ms` is in the future, readers must check both.
                    active             INTEGER NOT NULL DEFAULT 0,

                    -- NULL while the row is pending (payment initialised but not yet verified)
                    expiry_unix_ts_ms  INTEGER,

                    -- Paystack reference of the last initialised or applied transaction. Used to
                    -- detect the same payment being reported again by another channel.
                    last_ref           TEXT,

                    created_unix_ts_ms INTEGER NOT NULL,
                    updated_unix_ts_ms INTEGER NOT NULL,

                    -- JSON array of every Paystack reference that has granted time to this row.
                    -- A reference in here is never applied again, even after the row lapses.
                    applied_refs       TEXT    NOT NULL DEFAULT '[]',
                    PRIMARY KEY (email, device_id, app_id)
                )
            ''')

            # NOTE: Version migration
            target_db_version = 2
            db_version: int   = tx.cursor.execute('PRAGMA user_version').fetchone()[0]

            # NOTE: v0 is the nil state, the DB has never been bootstrapped and the table above was
            # created with the latest schema so we teleport to the target version
            if db_version == 0:
                db_version = target_db_version
                _          = tx.cursor.execute(f'PRAGMA user_version = {db_version}')

            if db_version == 1:
                log.info(f'Migrating DB version from {db_version} => {db_version + 1}')
                _ = tx.cursor.execute('''
                    ALTER TABLE subscriptions
                    ADD COLUMN applied_refs TEXT NOT NULL DEFAULT '[]'
                ''')

                # NOTE: v1 only remembered the last reference. A row with an expiry was activated
                # by it, a pending row (NULL expiry) holds an initialised but unapplied reference.
                _    = tx.cursor.execute('''
                    SELECT email, device_id, app_id, last_ref
                    FROM   subscriptions
                    WHERE  expiry_unix_ts_ms IS NOT NULL AND last_ref IS NOT NULL
                ''')
                rows = typing.cast(list[tuple[str, str, str, str]], tx.cursor.fetchall())
                for email, device_id, app_id, last_ref in rows:
                    _ = tx.cursor.execute('''
                        UPDATE subscriptions
                        SET    applied_refs = ?
                        WHERE  email = ? AND device_id = ? AND app_id = ?
                    ''', (json.dumps([last_ref]), email, device_id, app_id))

                db_version += 1 # NOTE: Bump the version
                _           = tx.cursor.execute(f'PRAGMA user_version = {db_version}')

            if db_version != target_db_version:
                err.msg_list.append(f'DB at {path} has version {db_version}, expected {target_db_version}')
                tx.cancel = True
            else:
                result.success = True
        except Exception:
            err.msg_list.append(f'Failed to bootstrap DB tables: {traceback.format_exc()}')

    if result.success:
        # NOTE: journal_mode cannot be changed inside a transaction. In-memory DBs ignore it.
        _ = result.sql_conn.execute('PRAGMA journal_mode=WAL')
    else:
        result.sql_conn.close()

    return result

def db_info_string(sql_conn: sqlite3.Connection, db_path: str, unix_ts_ms: int, err: base.ErrorSink) -> str:
    total   = 0
    active  = 0
    pending = 0
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        try:
            _       = tx.cursor.execute('SELECT COUNT(*) FROM subscriptions')
            total   = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _       = tx.cursor.execute('SELECT COUNT(*) FROM subscriptions WHERE active = 1 AND expiry_unix_ts_ms > ?', (unix_ts_ms,))
            active  = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _       = tx.cursor.execute('SELECT COUNT(*) FROM subscriptions WHERE active = 0 AND expiry_unix_ts_ms IS NULL')
            pending = typing.cast(tuple[int], tx.cursor.fetchone())[0]
        except Exception as e:
            err.msg_list.append(f'Failed to retrieve DB metadata: {e}')

    result = ''
    if len(err.msg_list) == 0:
        db_size = os.stat(db_path).st_size if os.path.exists(db_path) else 0
        result = (
            '  DB:                      {} ({})\n'.format(db_path, base.format_bytes(db_size)) +
            '  Subscriptions:           {}\n'.format(total) +
            '  Active/Pending:          {}/{}'.format(active, pending)
        )
    return result

def get_subscription_tx(tx: base.SQLTransaction, key: IdentityKey) -> SubscriptionRow:
    assert tx.cursor is not None
    result = SubscriptionRow()
    _      = tx.cursor.execute(f'''
        SELECT {SQL_SUBSCRIPTION_COLUMNS}
        FROM   subscriptions
        WHERE  email = ? AND device_id = ? AND app_id = ?
    ''', (key.email, key.device_id, key.app_id))

    row = typing.cast(SubscriptionRowTuple | None, tx.cursor.fetchone())
    if row:
        result = subscription_row_from_tuple(row)
    return result

def get_subscription(sql_conn: sqlite3.Connection, key: IdentityKey) -> SubscriptionRow:
    result = SubscriptionRow()
    with base.SQLTransaction(sql_conn) as tx:
        result = get_subscription_tx(tx, key)
    return result

def get_subscriptions_list(sql_conn: sqlite3.Connection) -> list[SubscriptionRow]:
    result: list[SubscriptionRow] = []
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _    = tx.cursor.execute(f'SELECT {SQL_SUBSCRIPTION_COLUMNS} FROM subscriptions')
        rows = typing.cast(list[SubscriptionRowTuple], tx.cursor.fetchall())
        for row in rows:
            result.append(subscription_row_from_tuple(row))
    return result

def upsert_pending_tx(tx: base.SQLTransaction, key: IdentityKey, reference: str, unix_ts_ms: int) -> UpsertPendingResult:
    """
    Record that a payment was initialised for `key`. A row that is missing, pending or expired is
    reset to pending with `reference`. A row with an active, unexpired subscription is never
    overwritten, the caller is told about the conflict instead.

    The read and the write must happen in the same transaction, open it in
    `SQLTransactionMode.Immediate` so that a concurrent activation cannot slip in between.
    """
    assert tx.cursor is not None
    result          = UpsertPendingResult()
    result.existing = get_subscription_tx(tx, key)
    if result.existing.is_active_at(unix_ts_ms):
        result.status = UpsertPendingStatus.Conflict
        log.info(f'Pending payment refused, subscription still active (key={key.log_label()}, ref={reference}, expiry={base.readable_unix_ts_ms(result.existing.expiry_unix_ts_ms)})')
        return result

    _ = tx.cursor.execute(f'''
        INSERT INTO subscriptions ({SQL_SUBSCRIPTION_COLUMNS})
        VALUES (?, ?, ?, 0, NULL, ?, ?, ?, '[]')
        ON CONFLICT (email, device_id, app_id) DO UPDATE SET
            active             = 0,
            expiry_unix_ts_ms  = NULL,
            last_ref           = excluded.last_ref,
            updated_unix_ts_ms = excluded.updated_unix_ts_ms
    ''', (key.email, key.device_id, key.app_id, reference, unix_ts_ms, unix_ts_ms))

    result.status = UpsertPendingStatus.Written
    log.info(f'Pending payment (key={key.log_label()}, ref={reference})')
    return result

def upsert_pending(sql_conn: sqlite3.Connection, key: IdentityKey, reference: str, unix_ts_ms: int) -> UpsertPendingResult:
    result = UpsertPendingResult()
    with base.SQLTransaction(sql_conn, base.SQLTransactionMode.Immediate) as tx:
        result = upsert_pending_tx(tx, key, reference, unix_ts_ms)
    return result

def activate_tx(tx: base.SQLTransaction, key: IdentityKey, expiry_unix_ts_ms: int, reference: str, unix_ts_ms: int, err: base.ErrorSink) -> bool:
    """
    Mark the subscription for `key` as active until `expiry_unix_ts_ms`, creating the row if it
    does not exist (e.g. the webhook arrived for a payment we never saw initialised).

    Idempotent: the stored expiry only ever moves forward (`MAX` of the existing and requested
    expiry) and `active` is only ever set, never cleared, so applying an equal or older activation
    again leaves the row as it was or better. `reference` is added to the row's applied references
    if it is not already there.
    """
    assert tx.cursor is not None
    result = False
    if expiry_unix_ts_ms <= unix_ts_ms:
        err.msg_list.append(f'Refusing to activate {key.log_label()} with an expiry in the past: {base.readable_unix_ts_ms(expiry_unix_ts_ms)}')
        return result

    applied_refs: list[str] = get_subscription_tx(tx, key).applied_refs
    if reference not in applied_refs:
        applied_refs.append(reference)

    _ = tx.cursor.execute(f'''
        INSERT INTO subscriptions ({SQL_SUBSCRIPTION_COLUMNS})
        VALUES (?, ?, ?, 1, ?, ?, ?, ?, ?)
        ON CONFLICT (email, device_id, app_id) DO UPDATE SET
            active             = 1,
            expiry_unix_ts_ms  = MAX(COALESCE(expiry_unix_ts_ms, 0), excluded.expiry_unix_ts_ms),
            last_ref           = excluded.last_ref,
            updated_unix_ts_ms = excluded.updated_unix_ts_ms,
            applied_refs       = excluded.applied_refs
    ''', (key.email, key.device_id, key.app_id, expiry_unix_ts_ms, reference, unix_ts_ms, unix_ts_ms, json.dumps(applied_refs)))

    result = tx.cursor.rowcount > 0
    if not result:
        err.msg_list.append(f'Activating subscription for {key.log_label()} (ref={reference}) did not modify any rows')
    return result

def record_verified_payment(sql_conn:                   sqlite3.Connection,
                            payment:                    VerifiedPayment,
                            expected_amount_minor_units: int,
                            subscription_days:          int,
                            unix_ts_ms:                 int,
                            err:                        base.ErrorSink) -> ReconcileOutcome:
    """
    Apply a payment that Paystack has confirmed as successful to the subscription it belongs to.

    Rejected without touching the DB if the amount differs from the configured price or the
    metadata does not identify a subscription. Otherwise the new expiry is:

      - unchanged, if this reference has already been applied to the row, whether or not the row
        is still active. This is the common case of the callback, the poll and the webhook all
        reporting one payment, and also covers an old reference being redelivered much later.
      - the current expiry + `subscription_days`, if the row is active and unexpired from a
        different reference. The user paid twice, they get both periods back to back.
      - `unix_ts_ms` + `subscription_days` otherwise (new, pending or lapsed subscription).

    Every reference therefore grants its period at most once, so any ordering of redeliveries of
    the same set of references converges to the same expiry.

    The decision is made from the stored row inside a single IMMEDIATE transaction so two
    channels racing on the same payment cannot each compute their own "now" and diverge.
    """
    result     = ReconcileOutcome()
    result.key = make_identity_key(payment.email, payment.device_id, payment.app_id)

    if payment.amount_minor_units != expected_amount_minor_units:
        result.status = ReconcileStatus.AmountMismatch
        log.warning(f'Payment amount mismatch (ref={payment.reference}, amount={payment.amount_minor_units}, expected={expected_amount_minor_units})')
        return result

    if not result.key.complete():
        result.status = ReconcileStatus.IncompleteMetadata
        log.warning(f'Payment metadata is missing the identity (ref={payment.reference}, key={result.key.log_label()})')
        return result

    subscription_ms: int = subscription_days * base.MILLISECONDS_IN_DAY
    with base.SQLTransaction(sql_conn, base.SQLTransactionMode.Immediate) as tx:
        existing: SubscriptionRow = get_subscription_tx(tx, result.key)
        if payment.reference in existing.applied_refs:
            result.status            = ReconcileStatus.AlreadyApplied
            result.expiry_unix_ts_ms = existing.expiry_unix_ts_ms
            log.info(f'Payment already applied (key={result.key.log_label()}, ref={payment.reference}, expiry={base.readable_unix_ts_ms(existing.expiry_unix_ts_ms)}, active={existing.is_active_at(unix_ts_ms)})')
            return result

        if existing.is_active_at(unix_ts_ms):
            assert existing.expiry_unix_ts_ms is not None
            expiry_unix_ts_ms = existing.expiry_unix_ts_ms + subscription_ms
        else:
            expiry_unix_ts_ms = unix_ts_ms + subscription_ms

        if activate_tx(tx, result.key, expiry_unix_ts_ms, payment.reference, unix_ts_ms, err):
            result.status            = ReconcileStatus.Success
            result.expiry_unix_ts_ms = get_subscription_tx(tx, result.key).expiry_unix_ts_ms or expiry_unix_ts_ms
        else:
            tx.cancel = True

    if result.status == ReconcileStatus.Success:
        log.info(f'Payment applied (key={result.key.log_label()}, ref={payment.reference}, expiry={base.readable_unix_ts_ms(result.expiry_unix_ts_ms)})')
    return result

def expire_subscriptions(sql_conn: sqlite3.Connection, unix_ts_ms: int) -> int:
    '''Clear the active flag of rows whose expiry has elapsed. Returns the number of rows changed.'''
    result = 0
    with base.SQLTransaction(sql_conn, base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute('''
            UPDATE subscriptions
            SET    active = 0, updated_unix_ts_ms = ?
            WHERE  active = 1 AND (expiry_unix_ts_ms IS NULL OR expiry_unix_ts_ms <= ?)
        ''', (unix_ts_ms, unix_ts_ms))
        result = tx.cursor.rowcount
    log.info(f'Expire subscriptions (ts={base.readable_unix_ts_ms(unix_ts_ms)}, expired={result})')
    return result
