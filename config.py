'''
Start-up configuration for the subscription backend. Options are read from an optional .INI file
(path given by SUB_BACKEND_INI_PATH) and then overridden by environment variables. Environment
variables are the only way to pass options when the app is mounted by UWSGI so every option in the
.INI file has an environment counterpart.

  [base]
  db_path             = subscriptions.sqlite
  db_path_is_uri      = false
  log_path            = subscription-backend.log
  unsafe_logging      = false
  print_tables        = false
  port                = 5000

  [paystack]
  secret_key          = sk_live_...
  app_scheme          = joki
  app_name            = joki
  base_url            = https://api.example.com
  subscription_days   = 30
  subscription_amount = 5000
'''

import configparser
import dataclasses
import logging
import os
import pathlib

import base
import server

log = logging.Logger('CONFIG')

@dataclasses.dataclass
class ParsedArgs:
    ini_path:            str  = ''
    db_path:             str  = 'subscriptions.sqlite'
    db_path_is_uri:      bool = False
    log_path:            str  = 'subscription-backend.log'
    unsafe_logging:      bool = False
    print_tables:        bool = False
    port:                int  = 5000

    paystack_secret:     str  = ''
    app_scheme:          str  = 'joki'
    app_name:            str  = 'joki'
    base_url:            str  = ''
    subscription_days:   int  = 30
    subscription_amount: int  = 5000 # Major currency units (e.g. Naira), Paystack is sent minor units

    def amount_minor_units(self) -> int:
        result = self.subscription_amount * 100
        return result

    def server_settings(self) -> server.Settings:
        result = server.Settings(paystack_secret                 = self.paystack_secret,
                                 app_scheme                      = self.app_scheme,
                                 app_name                        = self.app_name,
                                 base_url                        = self.base_url,
                                 subscription_days               = self.subscription_days,
                                 subscription_amount_minor_units = self.amount_minor_units())
        return result

def parse_int(value: str, label: str, err: base.ErrorSink) -> int:
    result = 0
    try:
        result = int(value.strip())
    except ValueError:
        err.msg_list.append(f'{label} must be an integer, received "{value}"')
    return result

def os_get_int_env(var_name: str, default: int, err: base.ErrorSink) -> int:
    result = default
    value  = os.getenv(var_name)
    if value is not None:
        result = parse_int(value, var_name, err)
    return result

def parse_args(err: base.ErrorSink) -> ParsedArgs:
    # NOTE: Parse .INI file if present and get arguments for it
    result          = ParsedArgs()
    result.ini_path = os.getenv('SUB_BACKEND_INI_PATH', '')
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            err.msg_list.append(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            return result

        ini_parser = configparser.ConfigParser()
        try:
            _ = ini_parser.read(filenames=result.ini_path)
        except configparser.Error as e:
            err.msg_list.append(f'.INI config file "{result.ini_path}" failed to be parsed: {e}')
            return result

        if 'base' in ini_parser:
            base_section: configparser.SectionProxy = ini_parser['base']
            result.db_path                          = base_section.get(option='db_path',               fallback=result.db_path)
            result.db_path_is_uri                   = base_section.getboolean(option='db_path_is_uri', fallback=result.db_path_is_uri)
            result.log_path                         = base_section.get(option='log_path',              fallback=result.log_path)
            result.unsafe_logging                   = base_section.getboolean(option='unsafe_logging', fallback=result.unsafe_logging)
            result.print_tables                     = base_section.getboolean(option='print_tables',   fallback=result.print_tables)
            result.port                             = parse_int(base_section.get(option='port', fallback=str(result.port)), 'base.port', err)

        if 'paystack' in ini_parser:
            paystack_section: configparser.SectionProxy = ini_parser['paystack']
            result.paystack_secret                      = paystack_section.get(option='secret_key', fallback=result.paystack_secret)
            result.app_scheme                           = paystack_section.get(option='app_scheme', fallback=result.app_scheme)
            result.app_name                             = paystack_section.get(option='app_name',   fallback=result.app_name)
            result.base_url                             = paystack_section.get(option='base_url',   fallback=result.base_url)
            result.subscription_days                    = parse_int(paystack_section.get(option='subscription_days',   fallback=str(result.subscription_days)),   'paystack.subscription_days',   err)
            result.subscription_amount                  = parse_int(paystack_section.get(option='subscription_amount', fallback=str(result.subscription_amount)), 'paystack.subscription_amount', err)

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.db_path             = os.getenv('SUB_BACKEND_DB_PATH',                      result.db_path)
    result.db_path_is_uri      = base.os_get_boolean_env('SUB_BACKEND_DB_PATH_IS_URI', result.db_path_is_uri)
    result.log_path            = os.getenv('SUB_BACKEND_LOG_PATH',                     result.log_path)
    result.unsafe_logging      = base.os_get_boolean_env('SUB_BACKEND_UNSAFE_LOGGING', result.unsafe_logging)
    result.print_tables        = base.os_get_boolean_env('SUB_BACKEND_PRINT_TABLES',   result.print_tables)
    result.port                = os_get_int_env('SUB_BACKEND_PORT',                    result.port, err)

    result.paystack_secret     = os.getenv('SUB_BACKEND_PAYSTACK_SECRET',              result.paystack_secret)
    result.app_scheme          = os.getenv('SUB_BACKEND_APP_SCHEME',                   result.app_scheme)
    result.app_name            = os.getenv('SUB_BACKEND_APP_NAME',                     result.app_name)
    result.base_url            = os.getenv('SUB_BACKEND_BASE_URL',                     result.base_url)
    result.subscription_days   = os_get_int_env('SUB_BACKEND_SUBSCRIPTION_DAYS',       result.subscription_days,   err)
    result.subscription_amount = os_get_int_env('SUB_BACKEND_SUBSCRIPTION_AMOUNT',     result.subscription_amount, err)

    if result.subscription_days <= 0:
        err.msg_list.append(f'Subscription days must be positive, received {result.subscription_days}')
    if result.subscription_amount <= 0:
        err.msg_list.append(f'Subscription amount must be positive, received {result.subscription_amount}')
    if result.port <= 0 or result.port > 65535:
        err.msg_list.append(f'Port must be within [1, 65535], received {result.port}')
    if len(result.db_path) == 0:
        err.msg_list.append('DB path must not be empty')
    if len(result.app_scheme) == 0:
        err.msg_list.append('App scheme must not be empty')

    # NOTE: Not fatal, /pay reports a config error until these are set
    if len(result.paystack_secret) == 0:
        log.warning('Paystack secret key is not set, payments and webhooks will be refused')
    if len(result.base_url) == 0:
        log.warning('Public base URL is not set, payments will be refused')

    return result
