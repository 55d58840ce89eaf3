'''
Main entry point for the subscription backend. This runs the necessary setup code like initialising
the DB and reading the start-up options before handing over control-flow to Flask.

The options are given through an .INI file and/or environment variables (see config.py) because
this application runs directly as a flask app (in a dev environment) and it can also be served over
UWSGI for production. UWSGI mounts the flask app with no possibility to forward command line
arguments to the underlying application, so argparse is not an option here.
'''

import datetime
import logging
import logging.handlers
import pathlib
import signal
import sys
import threading
import time
import types

import flask

import backend
import base
import config
import paystack
import server

log = logging.Logger('MAIN')

def signal_handler(sig: int, _frame: types.FrameType | None):
    global stop_maintenance_thread

    # NOTE: Wake up the thread and set the flag to terminate it
    stop_maintenance_thread = True
    maintenance_thread_event.set()

    # NOTE: Unregister handler and resume the default handler by re-raising it
    _ = signal.signal(sig, signal.SIG_DFL)
    signal.raise_signal(sig)

def backend_maintenance_thread_entry_point(db_path: str, db_path_is_uri: bool):
    global stop_maintenance_thread
    while not stop_maintenance_thread:
        start_unix_ts_s:    float = time.time()
        next_day_unix_ts_s: float = base.round_unix_ts_ms_to_next_day(int(start_unix_ts_s * 1000)) / 1000.0
        sleep_time_s:       float = next_day_unix_ts_s - start_unix_ts_s
        next_day_str:       str   = datetime.datetime.fromtimestamp(next_day_unix_ts_s, tz=datetime.timezone.utc).strftime('%Y-%m-%d')

        # Sleep on the event until the sleep time has elapsed, or, we get woken up by SIG handler.
        while int(sleep_time_s) > 0 and not stop_maintenance_thread:
            assert sleep_time_s <= base.SECONDS_IN_DAY
            log.info(f'Sleeping for {base.format_seconds(sleep_time_s)} to expire subscriptions at UTC {next_day_str}')
            _ = maintenance_thread_event.wait(timeout=sleep_time_s)
            sleep_time_s = next_day_unix_ts_s - int(time.time())

        # NOTE: Every UWSGI process runs this thread and races at midnight. Clearing the flag is
        # idempotent so the losers just update zero rows.
        if not stop_maintenance_thread:
            try:
                with backend.OpenDBAtPath(db_path, db_path_is_uri) as db:
                    expired = backend.expire_subscriptions(sql_conn=db.sql_conn, unix_ts_ms=int(next_day_unix_ts_s * 1000))
                log.info(f'Daily expiry for {next_day_str} completed, {expired} subscription(s) lapsed')
            except Exception as e:
                log.error(f'Daily expiry for {next_day_str} failed: {e}')

def entry_point() -> flask.Flask:
    global startup_args

    log_formatter  = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    console_logger = logging.StreamHandler()
    console_logger.setFormatter(log_formatter)
    loggers: list[logging.Logger] = [log, config.log, backend.log, paystack.log, server.log]

    # NOTE: Setup console logger
    for it in loggers:
        it.addHandler(console_logger)

    # NOTE: Parse arguments from .INI if present and environment variables, then setup global variables
    err                 = base.ErrorSink()
    startup_args        = config.parse_args(err)
    base.UNSAFE_LOGGING = startup_args.unsafe_logging
    if err.has():
        log.error('Failed to startup, invalid configuration options:\n  ' + err.build())
        sys.exit(1)

    # NOTE: Setup file logger
    file_logger = logging.handlers.RotatingFileHandler(filename=startup_args.log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
    file_logger.setFormatter(log_formatter)
    for it in loggers:
        it.addHandler(file_logger)

    # NOTE: Ensure the path is setup for writing the database
    if not startup_args.db_path_is_uri:
        try:
            pathlib.Path(startup_args.db_path).parent.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            log.error(f'Failed to create directory for {startup_args.db_path}: {e}')
            sys.exit(1)

    # NOTE: Open the DB (create tables if necessary)
    db: backend.SetupDBResult = backend.setup_db(path=startup_args.db_path, uri=startup_args.db_path_is_uri, err=err)
    if err.has() or db.sql_conn is None:
        log.error(f'Failed to setup the DB: {err.build()}')
        sys.exit(1)

    # NOTE: Handle printing of the DB to standard out if requested
    if startup_args.print_tables:
        base.print_db_to_stdout(db.sql_conn)
        sys.exit(1)

    # NOTE: Dump some startup diagnostics
    info_string: str = backend.db_info_string(sql_conn=db.sql_conn, db_path=db.path, unix_ts_ms=base.unix_ts_ms_now(), err=err)
    if err.has():
        log.error(f'Failed to read the DB: {err.build()}')
        sys.exit(1)

    startup_log  = '\n'
    startup_log += f'Subscription Backend\n{info_string}\n'
    startup_log += f'  Features:\n'
    if len(startup_args.ini_path) > 0:
        startup_log += f'    Config .INI file loaded: {startup_args.ini_path}\n'
    if 1:
        label = ' (URI)' if startup_args.db_path_is_uri else ''
        startup_log += f'    DB loaded from: {db.path}{label}\n'
        startup_log += f'    Logging to: {startup_args.log_path}\n'
    startup_log += f'    Subscription: {startup_args.subscription_amount} ({startup_args.amount_minor_units()} minor units) for {startup_args.subscription_days} day(s)\n'
    startup_log += f'    App: {startup_args.app_name} (deep link scheme {startup_args.app_scheme}://)\n'
    startup_log += f'    Public base URL: {startup_args.base_url if len(startup_args.base_url) else "(not set)"}\n'
    startup_log += f'    Paystack secret key: {"set" if len(startup_args.paystack_secret) else "(not set)"}\n'
    if startup_args.unsafe_logging:
        startup_log += f'    Unsafe logging enabled (this must NOT be used in production)\n'
    log.info(startup_log)

    # NOTE: Running the application just in Flask (e.g. local development) we need a way to signal
    # to the long-running expiry thread to terminate itself otherwise the application hangs on exit.
    # Under UWSGI this requires `py-call-osafterfork` for our handlers to be respected.
    _ = signal.signal(signal.SIGINT,  signal_handler) # Ctrl+C
    _ = signal.signal(signal.SIGTERM, signal_handler) # Terminate
    _ = signal.signal(signal.SIGQUIT, signal_handler) # Quit

    # Dispatch a long-running thread that wakes up every 00:00 UTC to clear the active flag of
    # lapsed subscriptions. /status gates on the expiry itself, this keeps the table tidy.
    thread = threading.Thread(target=backend_maintenance_thread_entry_point,
                              args=(startup_args.db_path, startup_args.db_path_is_uri),
                              daemon=True)
    thread.start()

    gateway = paystack.Client(secret_key=startup_args.paystack_secret)
    result: flask.Flask = server.init(testing_mode   = False,
                                      db_path        = db.path,
                                      db_path_is_uri = startup_args.db_path_is_uri,
                                      settings       = startup_args.server_settings(),
                                      gateway        = gateway)

    # NOTE: Add flask to our global logger
    result.logger.addHandler(console_logger)
    result.logger.addHandler(file_logger)

    # The flask runner/UWSGI takes over from here. Each request opens its own connection to the DB.
    db.sql_conn.close()
    return result

# Flask entry point
stop_maintenance_thread                = False
maintenance_thread_event               = threading.Event()
startup_args:      config.ParsedArgs   = config.ParsedArgs()
flask_app:         flask.Flask         = entry_point()

if __name__ == '__main__':
    flask_app.run(host='0.0.0.0', port=startup_args.port)
