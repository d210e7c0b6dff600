# Copyright 2013 Getlogic BV, Sardar Yumatov
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import os
import json
import decimal
import datetime
import logging
import threading

import OpenSSL
import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import FirebaseError
from google.auth import exceptions as auth_exceptions


__all__ = ('FcmcastError', 'ConfigurationError', 'GatewayError', 'MAX_BATCH_SIZE',
           'MIN_TOKEN_LENGTH', 'read_tokens', 'normalize_data', 'Credentials',
           'Session', 'Gateway', 'Message', 'Result')

log = logging.getLogger(__name__)

# FCM refuses multicast requests with more tokens than this.
MAX_BATCH_SIZE = 500

# Registration tokens this short (or shorter) are garbage.
MIN_TOKEN_LENGTH = 100


class FcmcastError(Exception):
    """ Base class for all errors raised by this package. """


class ConfigurationError(FcmcastError, ValueError):
    """ Token list, message or credentials could not be loaded. """


class GatewayError(FcmcastError):
    """ FCM call for a whole batch has failed. """

    def __init__(self, message, batch_size=None):
        super(GatewayError, self).__init__(message)
        self.batch_size = batch_size


def read_tokens(source, min_length=MIN_TOKEN_LENGTH):
    """ Lazy iterator over registration tokens, one token per line.

        Lines no longer than ``min_length`` characters are skipped as invalid.
        Duplicates are kept. Lines that are not valid UTF-8 are skipped as
        well. If `source` is a path, then the file is opened right away, so
        a missing file is reported before anything is sent, and closed once
        the iterator is exhausted or closed.

        :Arguments:
            - `source` (str or file): path to the token list or open text/binary file.
            - `min_length` (int): tokens of this length or shorter are dropped.

        :Returns:
            generator over ``str``
    """
    if isinstance(source, (str, os.PathLike)):
        try:
            fp = open(source, 'rb')
        except OSError as exc:
            raise ConfigurationError("Can not read tokens file {0}: {1}".format(source, exc)) from exc

        return _scan_tokens(fp, min_length, close=True)

    return _scan_tokens(source, min_length, close=False)


def _scan_tokens(fp, min_length, close):
    try:
        for lineno, line in enumerate(fp, 1):
            if isinstance(line, bytes):
                try:
                    line = line.decode('utf-8')
                except UnicodeDecodeError:
                    log.warning("Skipping line %d of token list, not valid UTF-8", lineno)
                    continue

            token = line.rstrip('\r\n')
            if len(token) <= min_length:
                continue

            yield token
    finally:
        if close:
            fp.close()


def _format_float(value):
    if value != value or value in (float('inf'), float('-inf')):
        raise ConfigurationError("Data value {0!r} is not a finite number.".format(value))

    if value.is_integer():
        return str(int(value))

    # repr() gives the shortest round-trip form, Decimal drops the exponent
    return format(decimal.Decimal(repr(value)), 'f')


def normalize_data(data):
    """ Flatten message data to the ``{str: str}`` mapping FCM accepts.

        Strings are kept, booleans become ``"true"``/``"false"``, numbers
        are written in plain decimal notation and nested objects or arrays
        are serialized to compact JSON with sorted keys. Keys with ``null``
        value are dropped.
    """
    ret = {}
    for key, value in (data or {}).items():
        if isinstance(value, str):
            ret[key] = value
        elif isinstance(value, bool):  # before int, bool is an int
            ret[key] = 'true' if value else 'false'
        elif isinstance(value, int):
            ret[key] = str(value)
        elif isinstance(value, float):
            ret[key] = _format_float(value)
        elif isinstance(value, (dict, list)):
            try:
                ret[key] = json.dumps(value, **Message.json_parameters)
            except ValueError as exc:
                raise ConfigurationError("Data value for key {0!r} is not valid JSON: {1}".format(key, exc)) from exc
        elif value is None:
            log.warning("Dropping data key %r with null value", key)
        else:
            raise ConfigurationError("Unsupported data value for key {0!r}: {1!r}".format(key, value))

    return ret


class Credentials(object):
    """ Service account credentials. """
    required_fields = ('project_id', 'client_email', 'private_key')

    def __init__(self, info=None, info_file=None):
        """ Google service account, as downloaded from Firebase console.

            The private key is loaded with `pyOpenSSL` and checked for
            consistency, so broken credentials are reported before the
            first request to FCM is made.

            :Arguments:
                - `info` (dict): parsed service account JSON document.
                - `info_file` (str): path to service account JSON file.
        """
        if info_file:
            try:
                with open(info_file, 'r', encoding='utf-8') as fp:
                    info = json.load(fp)
            except OSError as exc:
                raise ConfigurationError("Can not read credentials file {0}: {1}".format(info_file, exc)) from exc
            except ValueError as exc:
                raise ConfigurationError("Malformed credentials file {0}: {1}".format(info_file, exc)) from exc

        if not isinstance(info, dict):
            raise ConfigurationError("Credentials must be a JSON object.")

        if info.get('type') != 'service_account':
            raise ConfigurationError("Credentials type must be 'service_account', got {0!r}.".format(info.get('type')))

        missing = [name for name in self.required_fields if not info.get(name)]
        if missing:
            raise ConfigurationError("Credentials lack required fields: {0}".format(", ".join(missing)))

        try:
            pk = OpenSSL.crypto.load_privatekey(OpenSSL.crypto.FILETYPE_PEM, info['private_key'].encode('ascii'))
            pk.check()
        except (OpenSSL.crypto.Error, AttributeError, TypeError, UnicodeEncodeError) as exc:
            raise ConfigurationError("Credentials private key is invalid: {0}".format(exc)) from exc

        self._info = dict(info)
        self._credential = None

    @property
    def project_id(self):
        """ Firebase project the credentials belong to. """
        return self._info['project_id']

    @property
    def client_email(self):
        """ Service account identity. """
        return self._info['client_email']

    def get_credential(self):
        """ Returns `firebase_admin` credential instance. """
        if self._credential is None:
            try:
                self._credential = credentials.Certificate(self._info)
            except ValueError as exc:
                raise ConfigurationError("Credentials rejected by firebase_admin: {0}".format(exc)) from exc

        return self._credential

    def __hash__(self):
        return hash((self.project_id, self.client_email))

    def __eq__(self, other):
        if isinstance(other, Credentials):
            return (self.project_id, self.client_email) == (other.project_id, other.client_email)

        return False


class Session(object):
    """ Cache of initialized Firebase apps. """

    def __init__(self):
        """ Firebase app per service account.

            Initializing an app is cheap, but access tokens are cached per
            app, so reusing the app saves token exchanges with Google. Use
            the session as context manager or call :func:`shutdown` when done.
        """
        self._apps = {}
        self._lock = threading.Lock()

    def get_app(self, credentials=None, **cred_params):
        """ Obtain cached app for the given credentials.

            :Arguments:
                - `credentials` (:class:`Credentials`): service account.
                - `cred_params` (kwargs): :class:`Credentials` arguments, used if `credentials` instance is not given.
        """
        if credentials is not None:
            cred = credentials
        else:
            cred = Credentials(**cred_params)

        with self._lock:
            if cred not in self._apps:
                name = "fcmcast-{0:x}-{1}".format(id(self), cred.client_email)
                self._apps[cred] = firebase_admin.initialize_app(cred.get_credential(), name=name)

            return self._apps[cred]

    def shutdown(self):
        """ Delete all apps created by this session. """
        with self._lock:
            apps = list(self._apps.values())
            self._apps.clear()

        for app in apps:
            firebase_admin.delete_app(app)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown()


class Gateway(object):
    """ FCM multicaster. """

    def __init__(self, app=None):
        """ FCM client.

            Every :func:`send` is exactly one blocking HTTP round of
            ``send_each_for_multicast``. The client is thread safe, any number
            of batches may be sent in parallel.

            :Arguments:
                - `app` (``firebase_admin.App``): app from :class:`Session`, default app if not given.
        """
        self._app = app

    def send(self, tokens, message, dry_run=False):
        """ Send the message to a batch of tokens.

            In `dry_run` mode FCM validates the request without delivering
            anything. Errors concerning individual tokens are reported in
            the result, errors concerning the whole request are raised.

            :Arguments:
                - `tokens` (sequence): at most :data:`MAX_BATCH_SIZE` registration tokens.
                - `message` (:class:`Message`): notification to send.
                - `dry_run` (bool): validate only.

            :Returns:
                :class:`Result` object with operation results.
        """
        tokens = tuple(tokens)
        if not tokens:
            raise ValueError("Can not send to empty batch.")

        if len(tokens) > MAX_BATCH_SIZE:
            raise ValueError("Batch of {0} tokens exceeds the limit of {1}.".format(len(tokens), MAX_BATCH_SIZE))

        multicast = message.multicast(tokens)
        try:
            response = messaging.send_each_for_multicast(multicast, dry_run=dry_run, app=self._app)
        except (FirebaseError, auth_exceptions.GoogleAuthError, ValueError) as exc:
            raise GatewayError("FCM request for {0} tokens failed: {1}".format(len(tokens), exc), len(tokens)) from exc

        return Result.from_response(tokens, response)


class Message(object):
    """ The notification message. """
    # JSON serialization of nested data values.
    json_parameters = {
        'separators': (',', ':'),
        'ensure_ascii': False,
        'sort_keys': True,
        'allow_nan': False,
    }

    # How long FCM keeps the message for offline Android devices.
    ttl = datetime.timedelta(days=7)

    def __init__(self, title="", body="", image_url="", collapse_key="", validate_only=False, data=None, ttl=None):
        """ The push notification, sent as is to every batch.

            :Arguments:
                - `title` (str): notification title.
                - `body` (str): notification text.
                - `image_url` (str): image shown in the notification, if any.
                - `collapse_key` (str): Android collapse key, if any.
                - `validate_only` (bool): send in dry run mode by default.
                - `data` (dict): custom key-value pairs, see :func:`normalize_data`.
                - `ttl` (int or timedelta): Android time to live, 7 days by default.
        """
        self._title = title
        self._body = body
        self._image_url = image_url
        self._collapse_key = collapse_key
        self._validate_only = validate_only
        self._data = normalize_data(data)

        if ttl is not None:
            if not isinstance(ttl, datetime.timedelta):
                ttl = datetime.timedelta(seconds=ttl)

            self.ttl = ttl

    @classmethod
    def from_dict(cls, doc, **kwargs):
        """ Build message from parsed JSON document.

            Recognized keys are ``title``, ``body``, ``image_url``,
            ``collapse_key``, ``validate_only`` and ``data``; the rest is
            ignored. Missing keys take their defaults.
        """
        if not isinstance(doc, dict):
            raise ConfigurationError("Message must be a JSON object.")

        for key in ('title', 'body', 'image_url', 'collapse_key'):
            if not isinstance(doc.get(key, ""), str):
                raise ConfigurationError("Message field {0!r} must be a string.".format(key))

        if not isinstance(doc.get('validate_only', False), bool):
            raise ConfigurationError("Message field 'validate_only' must be a boolean.")

        data = doc.get('data')
        if data is not None and not isinstance(data, dict):
            raise ConfigurationError("Message field 'data' must be an object.")

        return cls(title=doc.get('title', ""),
                   body=doc.get('body', ""),
                   image_url=doc.get('image_url', ""),
                   collapse_key=doc.get('collapse_key', ""),
                   validate_only=doc.get('validate_only', False),
                   data=data,
                   **kwargs)

    @classmethod
    def from_file(cls, path, **kwargs):
        """ Build message from JSON file. """
        try:
            with open(path, 'r', encoding='utf-8') as fp:
                doc = json.load(fp)
        except OSError as exc:
            raise ConfigurationError("Can not read message file {0}: {1}".format(path, exc)) from exc
        except ValueError as exc:
            raise ConfigurationError("Malformed message file {0}: {1}".format(path, exc)) from exc

        return cls.from_dict(doc, **kwargs)

    @property
    def title(self):
        return self._title

    @property
    def body(self):
        return self._body

    @property
    def image_url(self):
        return self._image_url

    @property
    def collapse_key(self):
        return self._collapse_key

    @property
    def validate_only(self):
        return self._validate_only

    @property
    def data(self):
        """ Normalized data as a copy, the message itself never changes. """
        return dict(self._data)

    def multicast(self, tokens):
        """ Returns ``MulticastMessage`` addressed to given tokens. """
        return messaging.MulticastMessage(
            tokens=list(tokens),
            data=dict(self._data),
            notification=messaging.Notification(
                title=self._title or None,
                body=self._body or None,
                image=self._image_url or None,
            ),
            android=messaging.AndroidConfig(
                ttl=self.ttl,
                priority='high',
                collapse_key=self._collapse_key or None,
                notification=messaging.AndroidNotification(priority='max'),
            ),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(content_available=True),
                ),
            ),
        )


class Result(object):
    """ Result of send operation. """

    def __init__(self, tokens, success_count, failure_count, failed=None):
        """ Outcome of one batch.

            :Arguments:
                - `tokens` (tuple): tokens of the batch.
                - `success_count` (int): number of accepted tokens.
                - `failure_count` (int): number of rejected tokens.
                - `failed` (dict): ``{token: (code, explanation)}`` of rejected tokens, if known.
        """
        self.tokens = tokens
        self.success_count = success_count
        self.failure_count = failure_count
        self._failed = failed or {}

    @classmethod
    def from_response(cls, tokens, response):
        """ Build result from ``BatchResponse``.

            The order of responses corresponds to the order of tokens.
        """
        failed = {}
        for token, resp in zip(tokens, response.responses):
            if not resp.success:
                exc = resp.exception
                failed[token] = (getattr(exc, 'code', None), str(exc))

        return cls(tokens, response.success_count, response.failure_count, failed)

    @property
    def failed(self):
        """ Reports failed tokens as ``{token: (code, explanation)}`` mapping.

            The code is the FCM error code, such as ``NOT_FOUND`` for
            tokens that are no longer registered.
        """
        return self._failed

    def __repr__(self):
        return "<Result tokens={0} success={1} failure={2}>".format(
            len(self.tokens), self.success_count, self.failure_count)
