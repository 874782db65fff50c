import json
import logging
from pbr.version import VersionInfo
import requests


LOG = logging.getLogger(__name__)

SIZE_UNITS = ['B', 'KB', 'MB', 'GB', 'TB', 'PB']


class ArtshipException(Exception):
    pass


class InvalidInputError(ArtshipException):
    pass


class APIException(ArtshipException):
    pass


class UnauthorizedException(APIException):
    pass


STATUS_CODES_TO_ERRORS = {
    401: UnauthorizedException
}


def get_version():
    try:
        return VersionInfo('artship').version_string()
    except Exception:
        return '0.0.0'


def get_user_agent():
    return 'artship/%s' % get_version()


def request_url(method, url, headers=None, data=None, stream=False,
                auth=None, ok_codes=(200,)):
    if not headers:
        headers = {}
    headers.update({'User-Agent': get_user_agent()})
    r = requests.request(method, url, data=data, headers=headers,
                         stream=stream, auth=auth)

    LOG.debug('-------------------------------------------------------')
    LOG.debug('API client requested: %s %s (stream=%s)'
              % (method, url, stream))
    for h in headers:
        if h == 'Authorization':
            LOG.debug('Header: %s = <redacted>' % h)
        else:
            LOG.debug('Header: %s = %s' % (h, headers[h]))
    LOG.debug('API client response: code = %s' % r.status_code)
    for h in r.headers:
        LOG.debug('Header: %s = %s' % (h, r.headers[h]))
    if not stream and method != 'HEAD':
        if r.text:
            try:
                LOG.debug('Data:\n    %s'
                          % ('\n    '.join(json.dumps(json.loads(r.text),
                                                      indent=4,
                                                      sort_keys=True).split('\n'))))
            except ValueError:
                LOG.debug('Text:\n    %s'
                          % ('\n    '.join(r.text.split('\n'))))
    else:
        LOG.debug('Result content not logged for streaming requests')
    LOG.debug('-------------------------------------------------------')

    if r.status_code in STATUS_CODES_TO_ERRORS:
        raise STATUS_CODES_TO_ERRORS[r.status_code](
            'API request failed', method, url, r.status_code, r.text, r.headers)

    if r.status_code not in ok_codes:
        raise APIException(
            'API request failed', method, url, r.status_code, r.text, r.headers)
    return r


def format_size(size):
    """Render a byte count for humans, e.g. 1536 -> '1.5 KB'."""
    if size < 1024:
        return '%d B' % size

    value = float(size)
    for unit in SIZE_UNITS[1:]:
        value /= 1024
        if value < 1024 or unit == SIZE_UNITS[-1]:
            return '%.1f %s' % (value, unit)


class CountingReader(object):
    """Wraps a file-like object and counts the bytes read through it.

    A debug line is logged every time another progress_interval bytes have
    passed, which replaces a terminal spinner for long extractions.
    """

    def __init__(self, fileobj, label='Read', progress_interval=64 * 1024 * 1024):
        self._fileobj = fileobj
        self.label = label
        self.progress_interval = progress_interval
        self.bytes_read = 0
        self._next_report = progress_interval

    def read(self, size=-1):
        d = self._fileobj.read(size)
        self.bytes_read += len(d)
        if self.progress_interval and self.bytes_read >= self._next_report:
            LOG.debug('%s %s so far' % (self.label, format_size(self.bytes_read)))
            while self._next_report <= self.bytes_read:
                self._next_report += self.progress_interval
        return d

    def close(self):
        if hasattr(self._fileobj, 'close'):
            self._fileobj.close()
