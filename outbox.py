# =================================================================
#   SchoolDesk - Message Outbox
#   Every outbound WhatsApp message is written to the `messages`
#   table with sent = 0. The dispatcher below delivers pending rows
#   to an HTTP gateway and flags them sent.
#
#   Architecture:
#     Feature routes --insert--> messages (sent=0)
#     OutboxDispatcher --POST--> Gateway, then messages.sent = 1
# =================================================================

import json
import datetime
import logging
import urllib.request
import urllib.error

from db_client import fetch_all, insert_chunked

logger = logging.getLogger(__name__)

STATUS_FILTERS = ('unsent', 'sent', 'all')


def _now():
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec='seconds')


def build_message(number, text, student_id=None, class_id=None):
    """Outbox row for one recipient."""
    return {
        'number': number or None,
        'text': text,
        'student_id': student_id,
        'class_id': class_id,
        'sent': 0,
        'created_at': _now(),
    }


def queue_message(client, number, text, student_id=None, class_id=None):
    row = client.table('messages').insert(build_message(number, text, student_id, class_id))[0]
    logger.info(f"[OUTBOX] Queued message #{row['id']} for {number or 'no number'}")
    return row


def queue_messages(client, messages, chunk_size=500):
    """Queue many messages in insert batches; returns the number queued."""
    rows = [
        build_message(m.get('number'), m['text'], m.get('student_id'), m.get('class_id'))
        for m in messages
    ]
    written = insert_chunked(client, 'messages', rows, chunk_size=chunk_size)
    logger.info(f"[OUTBOX] Queued {written} messages")
    return written


def _public(row):
    row = dict(row)
    row['sent'] = bool(row.get('sent'))
    return row


def group_duplicates(rows):
    """
    Collapse rows with the same (text, class_id) into one entry carrying
    `duplicate_count`. The first row seen for a key is kept.
    """
    grouped = {}
    for row in rows:
        key = (row['text'], row.get('class_id'))
        if key not in grouped:
            grouped[key] = dict(row, duplicate_count=1)
        else:
            grouped[key]['duplicate_count'] += 1
    return list(grouped.values())


def list_messages(client, status='unsent', class_id=None, since=None, page_size=1000):
    """Newest first, duplicates collapsed."""
    if status not in STATUS_FILTERS:
        raise ValueError(f"status must be one of {', '.join(STATUS_FILTERS)}")

    query = client.table('messages').select().order('created_at', desc=True)
    if status == 'unsent':
        query.eq('sent', 0)
    elif status == 'sent':
        query.eq('sent', 1)
    if class_id:
        query.eq('class_id', class_id)
    if since:
        query.gte('created_at', since)

    rows = fetch_all(query, page_size=page_size, order_key='id')
    return group_duplicates([_public(r) for r in rows])


def mark_sent(client, message_id):
    return client.table('messages').eq('id', message_id).update({'sent': 1, 'sent_at': _now()})


def delete_message(client, message_id):
    return client.table('messages').eq('id', message_id).delete()


class OutboxDispatcher:
    """
    Delivers queued messages to a WhatsApp gateway over HTTP.

    The gateway receives JSON {"number": ..., "text": ...}. A message is only
    marked sent after a 2xx response. A rejected message has its attempt
    counted and the reason kept in `last_error`; after `max_attempts` it is
    no longer picked up. With no gateway URL configured the dispatcher does
    nothing and rows stay queued.
    """

    def __init__(self, client, gateway_url='', token='', batch_size=50, timeout=10, max_attempts=5):
        self.client = client
        self.gateway_url = gateway_url.rstrip('/')
        self.token = token
        self.batch_size = batch_size
        self.timeout = timeout
        self.max_attempts = max_attempts

    @property
    def enabled(self):
        return bool(self.gateway_url)

    def deliver(self, message):
        """
        POST one message.

        Returns None when delivered, otherwise the gateway's rejection reason.
        Raises OSError (URLError, timeouts, resets) when the gateway cannot be reached.
        """
        payload = json.dumps({'number': message['number'], 'text': message['text']}).encode('utf-8')
        req = urllib.request.Request(self.gateway_url, data=payload, method='POST')
        req.add_header('Content-Type', 'application/json')
        req.add_header('User-Agent', 'SchoolDesk-Outbox/1.0')
        if self.token:
            req.add_header('Authorization', f'Bearer {self.token}')

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                if 200 <= response.status < 300:
                    return None
                return f"HTTP {response.status}"
        except urllib.error.HTTPError as e:
            error_msg = e.read().decode('utf-8', errors='replace')
            logger.warning(f"[OUTBOX] Gateway rejected message #{message['id']} - HTTP {e.code}: {error_msg}")
            return f"HTTP {e.code}: {error_msg}"[:500]

    def pending(self):
        """Unsent rows with a number, least-tried first so rejected rows cannot starve newer ones."""
        return (
            self.client.table('messages')
            .select('id', 'number', 'text', 'attempts')
            .eq('sent', 0)
            .is_null('number', False)
            .lt('attempts', self.max_attempts)
            .order('attempts')
            .order('id')
            .limit(self.batch_size)
            .execute()
        )

    def record_failure(self, message, error):
        attempts = (message.get('attempts') or 0) + 1
        self.client.table('messages').eq('id', message['id']).update({'attempts': attempts, 'last_error': error})
        if attempts >= self.max_attempts:
            logger.warning(f"[OUTBOX] Giving up on message #{message['id']} after {attempts} attempts")

    def dispatch_pending(self):
        """Deliver one batch of unsent messages."""
        if not self.enabled:
            return {"status": "disabled", "sent": 0, "failed": 0}

        sent = 0
        failed = 0
        for message in self.pending():
            try:
                error = self.deliver(message)
            except OSError as e:
                logger.warning(f"[OUTBOX] Gateway unreachable, stopping batch: {getattr(e, 'reason', e)}")
                return {"status": "offline", "sent": sent, "failed": failed}

            if error is None:
                mark_sent(self.client, message['id'])
                sent += 1
            else:
                self.record_failure(message, error)
                failed += 1

        if sent or failed:
            logger.info(f"[OUTBOX] Dispatch complete - sent: {sent}, failed: {failed}")
        return {"status": "success", "sent": sent, "failed": failed}
