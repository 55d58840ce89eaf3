'''
The base layer contains common utilities shared by the rest of the project and the testing suite.
It should have no dependency on any project files, only native Python packages and the small set
of third-party packages the project already depends on.
'''
import datetime
import dataclasses
import enum
import json
import logging
import math
import os
import sqlite3
import traceback
import typing
import typing_extensions

# NOTE: Constants
SECONDS_IN_DAY:      int = 60 * 60 * 24
MILLISECONDS_IN_DAY: int = SECONDS_IN_DAY * 1000

# NOTE: Global variables
UNSAFE_LOGGING = False

# NOTE: Restricted type-set, JSON supports more than this but the Paystack payloads and our own
# responses only need this subset.
JSONPrimitive: typing.TypeAlias = str | int | float | bool | None
JSONValue:     typing.TypeAlias = JSONPrimitive | dict[str, 'JSONValue'] | list['JSONValue']
JSONObject:    typing.TypeAlias = dict[str, JSONValue]

class LogFormatter(logging.Formatter):
    @typing_extensions.override
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None):
        dt     = datetime.datetime.fromtimestamp(record.created)
        result = dt.strftime('%y-%m-%d %H:%M:%S.%f')[:-3]
        return result

@dataclasses.dataclass
class ErrorSink:
    '''
    Passed to functions that want to report error messages without unwinding the stack by
    throwing exceptions.

    Errors are accumulated into the sink by a sequence of calls that have no dependency on each
    other and are checked at the end, e.g. extracting every field out of a request body before
    deciding to reject it so that the caller is told about all the missing fields at once.
    '''
    msg_list: list[str] = dataclasses.field(default_factory=list)

    def has(self) -> bool:
        result = len(self.msg_list) > 0
        return result

    def build(self) -> str:
        result = '\n  '.join(self.msg_list)
        return result

class SQLTransactionMode(enum.IntEnum):
    Default   = 0 # Acquires requisite r/w DB lock on first query
    Immediate = 1 # Acquires write lock up-front and allows concurrent reads
    Exclusive = 2 # Acquires lock and blocks concurrent reads (and by definition, writes)

@dataclasses.dataclass
class SQLTransaction:
    '''
    Scoped transaction on a connection. Commits on a clean exit, rolls back if an exception
    escapes the scope or `cancel` was set.

    Use `SQLTransactionMode.Immediate` for read-modify-write sequences, the write lock is taken at
    `BEGIN` so two connections racing on the same row are serialised instead of both reading the
    old state.
    '''
    conn:   sqlite3.Connection
    cursor: sqlite3.Cursor | None = None
    cancel: bool                  = False
    mode:   SQLTransactionMode    = SQLTransactionMode.Default
    def __init__(self, conn: sqlite3.Connection, mode: SQLTransactionMode = SQLTransactionMode.Default):
        self.conn   = conn
        self.cursor = None
        self.cancel = False
        self.mode   = mode

    def __enter__(self):
        mode_label = ''
        match self.mode:
            case SQLTransactionMode.Default:
                mode_label = 'DEFERRED '
            case SQLTransactionMode.Immediate:
                mode_label = 'IMMEDIATE '
            case SQLTransactionMode.Exclusive:
                mode_label = 'EXCLUSIVE '
        self.cursor = self.conn.execute(f'BEGIN {mode_label}TRANSACTION')
        return self

    def __exit__(self,
                 exc_type: object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        if self.cursor:
            self.cursor.close()
        if exc_type is not None or self.cancel:
            self.conn.rollback()
        else:
            self.conn.commit()
        return False

def unix_ts_ms_now() -> int:
    result = int(datetime.datetime.now(tz=datetime.timezone.utc).timestamp() * 1000)
    return result

def iso8601_from_unix_ts_ms(unix_ts_ms: int) -> str:
    '''Render a timestamp the way the clients expect it, e.g. 2026-11-18T09:30:00.000Z'''
    dt     = datetime.datetime.fromtimestamp(unix_ts_ms / 1000.0, tz=datetime.timezone.utc)
    result = dt.strftime('%Y-%m-%dT%H:%M:%S.') + f'{unix_ts_ms % 1000:03d}Z'
    return result

def readable_unix_ts_ms(unix_ts_ms: int | None) -> str:
    if unix_ts_ms is None:
        return 'None'
    date_str = datetime.datetime.fromtimestamp(unix_ts_ms/1000.0).strftime('%y-%m-%d %H:%M:%S.%f')[:-3]
    result   = f'{unix_ts_ms} ({date_str})'
    return result

def round_unix_ts_ms_to_next_day(unix_ts_ms: int) -> int:
    result: int = (unix_ts_ms + (MILLISECONDS_IN_DAY - 1)) // MILLISECONDS_IN_DAY * MILLISECONDS_IN_DAY
    return result

def format_bytes(size: int):
    units = [
        (1 << 30, 'GB'),
        (1 << 20, 'MB'),
        (1 << 10, 'kB'),
        (1,       'B')
    ]
    for unit, prefix in units:
        if size >= unit:
            return f'{size / unit:.2f} {prefix}'
    return '0.00 B'

def format_seconds(duration_s: float) -> str:
    hours   = int(duration_s // 3600)
    minutes = int((duration_s % 3600) // 60)
    seconds = int(duration_s % 60)
    result  = ''
    if hours > 0:
        result += f'{hours}h'
    if minutes > 0:
        result += f"{' ' if result else ''}{minutes}m"
    if seconds > 0 or result == '':
        result += f"{' ' if result else ''}{seconds}s"
    return result

def obfuscate(val: str) -> str:
    """
    Mask the middle of a string preserving a prefix and suffix, used for emails and references in
    logs. Returned as-is when unsafe logging is enabled or the string is shorter than 3 characters.
    """
    if UNSAFE_LOGGING or len(val) < 3:
        return val
    n_ends = max(math.floor(len(val) * 0.3), 1)
    return f"{val[:n_ends]}…{val[-n_ends:]}"

def safe_dump_dict_keys_or_data(d: dict[str, typing.Any] | None) -> str:
    """Dump the dict if UNSAFE_LOGGING is set, otherwise only its top-level keys"""
    if d is None:
        return "None"
    if UNSAFE_LOGGING:
        return json.dumps(d)
    return "dictionary w/ keys: {" + ', '.join(str(k) for k in d.keys()) + "}"

def safe_get_dict_value_type(d: dict[str, typing.Any], key: str) -> str:
    v      = d.get(key)
    result = f'({type(v)}) {v}' if UNSAFE_LOGGING else f'{type(v)}'
    return result

def json_dict_require_str(d: JSONObject, key: str, err: ErrorSink) -> str:
    result = ''
    if key in d:
        if isinstance(d[key], str):
            result = typing.cast(str, d[key])
        else:
            err.msg_list.append(f'Key "{key}" value was not a string: "{safe_get_dict_value_type(d, key)}"')
    else:
        err.msg_list.append(f'Required key "{key}" is missing from JSON: {safe_dump_dict_keys_or_data(d)}')
    return result

def json_dict_require_obj(d: JSONObject, key: str, err: ErrorSink) -> JSONObject:
    result: JSONObject = {}
    if key in d:
        if isinstance(d[key], dict):
            result = typing.cast(JSONObject, d[key])
        else:
            err.msg_list.append(f'Key "{key}" value was not an object: "{safe_get_dict_value_type(d, key)}"')
    else:
        err.msg_list.append(f'Required key "{key}" is missing from JSON: {safe_dump_dict_keys_or_data(d)}')
    return result

def json_dict_optional_str(d: JSONObject, key: str) -> str:
    '''Get the value if it's a string, otherwise an empty string'''
    result = ''
    value  = d.get(key)
    if isinstance(value, str):
        result = value
    return result

def os_get_boolean_env(var_name: str, default: bool = False):
    value = os.getenv(var_name, str(int(default)))
    if value == '1':
        return True
    elif value == '0':
        return False
    else:
        raise ValueError(f"Invalid value for environment variable '{var_name}': {value}. Allowed values are 0 or 1.")

def print_db_to_stdout_tx(tx: SQLTransaction) -> None:
    assert tx.cursor is not None
    _           = tx.cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
    table_names = [row[0] for row in typing.cast(list[tuple[str]], tx.cursor.fetchall())]
    for table_name in table_names:
        _                       = tx.cursor.execute(f'SELECT * FROM {table_name}')
        rows                    = tx.cursor.fetchall()
        column_names: list[str] = [description[0] for description in tx.cursor.description]

        contents: list[list[str]] = [column_names]
        for row in rows:
            content: list[str] = []
            for index, value in enumerate(row):
                if value is not None and column_names[index].endswith('unix_ts_ms'):
                    content.append(readable_unix_ts_ms(int(value)))
                else:
                    content.append(str(value))
            contents.append(content)

        col_widths = [max(len(it[i]) for it in contents) for i in range(len(column_names))]
        print(f'Table: {table_name} ({len(rows)} rows)')
        for index, it in enumerate(contents):
            print('  ' + ' | '.join(f'{field:<{col_widths[i]}}' for i, field in enumerate(it)))
            if index == 0:
                print('  ' + '-+-'.join('-' * width for width in col_widths))

def print_db_to_stdout(sql_conn: sqlite3.Connection) -> None:
    with SQLTransaction(sql_conn) as tx:
        print_db_to_stdout_tx(tx)
