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

""" Send one notification to every token of a token list.

    Usage::

        python -m fcmcast --tokens ./tokens --message ./message.json
            --credentials ./credentials_file.json
"""
import sys
import logging
import argparse

from fcmcast.fcm import FcmcastError, MAX_BATCH_SIZE, \
    read_tokens, Credentials, Session, Gateway, Message
from fcmcast.dispatcher import DEFAULT_CONCURRENCY, Dispatcher


log = logging.getLogger('fcmcast')

DEFAULT_TOKENS_PATH = './tokens'
DEFAULT_MESSAGE_PATH = './message.json'
DEFAULT_CREDENTIALS_PATH = './credentials_file.json'


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='fcmcast', description=__doc__.splitlines()[0].strip())
    parser.add_argument('--tokens', default=DEFAULT_TOKENS_PATH,
                        help="registration tokens, one per line (default: %(default)s)")
    parser.add_argument('--message', default=DEFAULT_MESSAGE_PATH,
                        help="notification message JSON (default: %(default)s)")
    parser.add_argument('--credentials', default=DEFAULT_CREDENTIALS_PATH,
                        help="Firebase service account JSON (default: %(default)s)")
    parser.add_argument('--batch-size', type=int, default=MAX_BATCH_SIZE,
                        help="tokens per FCM request, at most %(default)s")
    parser.add_argument('--concurrency', type=int, default=DEFAULT_CONCURRENCY,
                        help="FCM requests in flight (default: %(default)s)")
    parser.add_argument('--dry-run', action='store_const', const=True, default=None,
                        help="validate only, overrides validate_only of the message")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="log every failed token")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    with Session() as session:
        try:
            cred = Credentials(info_file=args.credentials)
            message = Message.from_file(args.message)
            dispatcher = Dispatcher(Gateway(session.get_app(cred)), batch_size=args.batch_size,
                                    concurrency=args.concurrency)
            tokens = read_tokens(args.tokens)
        except ValueError as exc:  # ConfigurationError and bad batch size or concurrency
            log.error("Configuration failed: %s", exc)
            return 1

        try:
            report = dispatcher.run(tokens, message, dry_run=args.dry_run)
        except FcmcastError as exc:
            log.error("Dispatch failed: %s", exc)
            return 1
        finally:
            tokens.close()

    log.info("Done: %d succeeded, %d failed, %d tokens in %d batches",
             report.successes, report.failures, report.tokens, report.batches)
    return 0


if __name__ == '__main__':
    sys.exit(main())
