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

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from fcmcast.fcm import MAX_BATCH_SIZE


__all__ = ('DEFAULT_CONCURRENCY', 'Report', 'Dispatcher', 'dispatch')

log = logging.getLogger(__name__)

# Number of batches that may be in flight at the same time.
DEFAULT_CONCURRENCY = 10


class Report(object):
    """ Aggregated outcome of all batches. """

    def __init__(self):
        self.successes = 0
        self.failures = 0
        self.batches = 0
        self.tokens = 0
        self._lock = threading.Lock()

    def add(self, result):
        """ Account one batch result. Safe to call from worker threads. """
        with self._lock:
            self.successes += result.success_count
            self.failures += result.failure_count
            self.batches += 1
            self.tokens += len(result.tokens)
            return self.batches

    def __repr__(self):
        return "<Report batches={0} tokens={1} successes={2} failures={3}>".format(
            self.batches, self.tokens, self.successes, self.failures)


class Dispatcher(object):
    """ Fans a token stream out to the gateway in bounded batches. """

    def __init__(self, gateway, batch_size=MAX_BATCH_SIZE, concurrency=DEFAULT_CONCURRENCY):
        """ Batching dispatcher.

            Tokens are grouped in batches of exactly ``batch_size``, each full
            batch is sent from a worker thread. At most ``concurrency``
            batches are in flight; the reader of the token stream blocks
            until a slot is free, so memory use is bounded by
            ``concurrency * batch_size`` tokens regardless of the stream
            length. The last, incomplete batch is sent after all full
            batches have completed.

            :Arguments:
                - `gateway` (:class:`Gateway`): anything with ``send(tokens, message, dry_run)``.
                - `batch_size` (int): tokens per request, 1 to :data:`MAX_BATCH_SIZE`.
                - `concurrency` (int): maximum number of requests in flight.
        """
        if not 0 < batch_size <= MAX_BATCH_SIZE:
            raise ValueError("Batch size must be within 1..{0}, got {1}.".format(MAX_BATCH_SIZE, batch_size))

        if concurrency < 1:
            raise ValueError("Concurrency must be positive, got {0}.".format(concurrency))

        self._gateway = gateway
        self.batch_size = batch_size
        self.concurrency = concurrency

    def run(self, tokens, message, dry_run=None):
        """ Send the message to every token.

            Returns when every batch has completed. There are no retries.
            If a batch fails as a whole, then no further batches are started,
            the ones in flight are awaited and the first error is raised.

            :Arguments:
                - `tokens` (iterable): valid registration tokens, consumed lazily.
                - `message` (:class:`Message`): the notification.
                - `dry_run` (bool): validate only; ``message.validate_only`` if None.

            :Returns:
                :class:`Report` with aggregated counts.
        """
        if dry_run is None:
            dry_run = message.validate_only

        report = Report()
        slots = threading.BoundedSemaphore(self.concurrency)
        errors = []
        batch = []

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='fcmcast') as pool:
            for token in tokens:
                batch.append(token)
                if len(batch) < self.batch_size:
                    continue

                ready = tuple(batch)
                batch = []

                # blocks while all slots are taken
                slots.acquire()
                if errors:
                    slots.release()
                    break

                try:
                    pool.submit(self._work, ready, message, dry_run, report, slots, errors)
                except BaseException:
                    slots.release()
                    raise

        # leaving the pool has joined all workers
        if errors:
            raise errors[0]

        if batch:
            self._send(tuple(batch), message, dry_run, report)

        return report

    def _work(self, batch, message, dry_run, report, slots, errors):
        try:
            self._send(batch, message, dry_run, report)
        except Exception as exc:
            log.error("Batch of %d tokens failed: %s", len(batch), exc)
            errors.append(exc)
        finally:
            slots.release()

    def _send(self, batch, message, dry_run, report):
        result = self._gateway.send(batch, message, dry_run=dry_run)
        number = report.add(result)
        log.info("Batch #%d: %d tokens, %d succeeded, %d failed%s", number, len(batch),
                 result.success_count, result.failure_count, " (dry run)" if dry_run else "")
        for token, (code, expl) in result.failed.items():
            log.debug("Token %s failed: %s %s", token, code, expl)

        return result


def dispatch(gateway, tokens, message, batch_size=MAX_BATCH_SIZE, concurrency=DEFAULT_CONCURRENCY, dry_run=None):
    """ Shortcut for ``Dispatcher(gateway, batch_size, concurrency).run(tokens, message, dry_run)``. """
    return Dispatcher(gateway, batch_size, concurrency).run(tokens, message, dry_run)
