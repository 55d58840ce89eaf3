'''
Integration with the Paystack payment processor. This layer makes the outbound calls to initialise
and verify a transaction and authenticates the webhook notifications Paystack sends us. It does not
touch the DB, the HTTP layer (server.py) feeds what is returned from here into the backend.

  https://paystack.com/docs/api/transaction/
  https://paystack.com/docs/payments/webhooks/
'''

import dataclasses
import hashlib
import hmac
import json
import logging
import typing
import urllib.parse

import urllib3

import base
from base import JSONObject

log = logging.Logger('PAYSTACK')

API_URL:          str = 'https://api.paystack.co'
SIGNATURE_HEADER: str = 'x-paystack-signature'

# Paystack event type that confirms a successful payment, other events are acknowledged and ignored
EVENT_CHARGE_SUCCESS: str = 'charge.success'
TRANSACTION_SUCCESS:  str = 'success'

@dataclasses.dataclass
class InitializeTransaction:
    success:           bool       = False
    authorization_url: str        = ''
    reference:         str        = ''
    details:           JSONObject = dataclasses.field(default_factory=dict)

@dataclasses.dataclass
class VerifyTransaction:
    success:            bool       = False
    status:             str        = '' # Paystack's transaction status, e.g. 'success', 'abandoned', 'failed'
    reference:          str        = ''
    amount_minor_units: int        = 0
    metadata:           JSONObject = dataclasses.field(default_factory=dict)
    details:            JSONObject = dataclasses.field(default_factory=dict)

@dataclasses.dataclass
class APIResponse:
    success: bool       = False
    data:    JSONObject = dataclasses.field(default_factory=dict) # The 'data' object of the response
    details: JSONObject = dataclasses.field(default_factory=dict) # Whole body (or failure reason) for diagnostics

class Gateway(typing.Protocol):
    '''The calls the HTTP layer makes to Paystack. Tests substitute their own implementation.'''
    def initialize_transaction(self, email: str, amount_minor_units: int, metadata: JSONObject, callback_url: str, err: base.ErrorSink) -> InitializeTransaction: ...
    def verify_transaction(self, reference: str, err: base.ErrorSink) -> VerifyTransaction: ...

def parse_metadata(value: typing.Any) -> JSONObject:
    '''
    Paystack echoes the metadata back as the object we sent, but it is also allowed to be a JSON
    encoded string (e.g. transactions created from the dashboard). Anything else is empty.
    '''
    result: JSONObject = {}
    if isinstance(value, dict):
        result = typing.cast(JSONObject, value)
    elif isinstance(value, str) and len(value):
        try:
            decoded = json.loads(value)
            if isinstance(decoded, dict):
                result = typing.cast(JSONObject, decoded)
        except json.JSONDecodeError:
            log.warning(f'Transaction metadata was a string but not JSON: {base.obfuscate(value)}')
    return result

def parse_amount(value: typing.Any) -> int:
    '''Amount in minor units (kobo), -1 if it is not an integer so that it never matches a price'''
    result = -1
    if isinstance(value, int) and not isinstance(value, bool):
        result = value
    elif isinstance(value, str) and value.isdigit():
        result = int(value)
    return result

class Client:
    secret_key: str
    api_url:    str
    http:       urllib3.PoolManager

    def __init__(self, secret_key: str, api_url: str = API_URL, http: urllib3.PoolManager | None = None, timeout: int = 30):
        self.secret_key = secret_key
        self.api_url    = api_url.rstrip('/')

        # NOTE: No retries, a failed call is reported straight back to the caller. Retrying an
        # initialise could create duplicate transactions on Paystack's side.
        self.http = http if http else urllib3.PoolManager(timeout=urllib3.Timeout(connect=timeout, read=timeout),
                                                          retries=False)

    def _request(self, method: str, path: str, body: JSONObject | None, err: base.ErrorSink) -> APIResponse:
        result  = APIResponse()
        headers = {'Authorization': f'Bearer {self.secret_key}'}
        encoded: bytes | None = None
        if body is not None:
            headers['Content-Type'] = 'application/json'
            encoded                 = json.dumps(body).encode('utf-8')

        url = f'{self.api_url}/{path}'
        try:
            response = self.http.request(method=method, url=url, body=encoded, headers=headers)
        except urllib3.exceptions.HTTPError as e:
            err.msg_list.append(f'Paystack request {method} {path} failed: {e}')
            result.details = {'message': str(e)}
            log.error(f'Paystack request {method} {path} failed: {e}')
            return result

        payload: typing.Any = None
        try:
            payload = json.loads(response.data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            pass

        if isinstance(payload, dict):
            result.details = typing.cast(JSONObject, payload)
        else:
            result.details = {'message': f'Non-JSON response (HTTP {response.status})'}

        if response.status < 200 or response.status >= 300:
            err.msg_list.append(f'Paystack request {method} {path} returned HTTP {response.status}')
            log.error(f'Paystack request {method} {path} returned HTTP {response.status}: {base.safe_dump_dict_keys_or_data(result.details)}')
            return result

        data = result.details.get('data')
        if not isinstance(data, dict):
            err.msg_list.append(f'Paystack request {method} {path} response was missing the data object')
            return result

        result.data    = typing.cast(JSONObject, data)
        result.success = True
        return result

    def initialize_transaction(self, email: str, amount_minor_units: int, metadata: JSONObject, callback_url: str, err: base.ErrorSink) -> InitializeTransaction:
        result   = InitializeTransaction()
        response = self._request('POST', 'transaction/initialize', {
            'email':        email,
            'amount':       amount_minor_units,
            'metadata':     metadata,
            'callback_url': callback_url,
        }, err)

        result.details = response.details
        if not response.success:
            return result

        result.authorization_url = base.json_dict_optional_str(response.data, 'authorization_url')
        result.reference         = base.json_dict_optional_str(response.data, 'reference')
        if len(result.authorization_url) == 0 or len(result.reference) == 0:
            err.msg_list.append('Paystack initialise response was missing the authorization URL or reference')
            return result

        result.success = True
        log.info(f'Initialised transaction (email={base.obfuscate(email)}, amount={amount_minor_units}, ref={result.reference})')
        return result

    def verify_transaction(self, reference: str, err: base.ErrorSink) -> VerifyTransaction:
        result   = VerifyTransaction()
        response = self._request('GET', f'transaction/verify/{urllib.parse.quote(reference, safe="")}', None, err)
        result.details = response.details
        if not response.success:
            return result

        result.status = base.json_dict_optional_str(response.data, 'status')
        if len(result.status) == 0:
            err.msg_list.append(f'Paystack verify response for {reference} was missing the transaction status')
            return result

        result.reference          = base.json_dict_optional_str(response.data, 'reference') or reference
        result.amount_minor_units = parse_amount(response.data.get('amount'))
        result.metadata           = parse_metadata(response.data.get('metadata'))
        result.success            = True
        return result

def verify_webhook_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    '''
    Paystack signs the webhook body with HMAC-SHA512 keyed by our secret key and puts the hex
    digest in the `x-paystack-signature` header. The digest must be computed over the bytes exactly
    as received. Parsing and re-serialising the JSON first changes whitespace and key order and
    breaks the comparison.
    '''
    if len(secret) == 0 or len(signature) == 0:
        return False
    expected = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha512).hexdigest()
    result   = hmac.compare_digest(expected.encode('utf-8'), signature.strip().lower().encode('utf-8'))
    return result

def sign_webhook_body(raw_body: bytes, secret: str) -> str:
    result = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha512).hexdigest()
    return result
