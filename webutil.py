'''
This file contains the constants and small helper functions shared by the web server
'''
import enum
import logging
import os
import re

DEFAULT_PORT = 1701
MAX_BACKLOG_CONNECTIONS = 1
BUFFER_SIZE = 1024  # 1024 Bytes
ACCEPT_TIME_OUT = 0.5  # 500ms
CONTENT_ROOT = 'data'
HEADER_TERMINATOR = b'\r\n\r\n'
DEFAULT_LOG_LEVEL = 1

# only file<digit>.html and image<digit>.jpg may be served
VALID_FILE_PATTERN = re.compile(r'(file[0-9]\.html)|(image[0-9]\.jpg)')

content_types = {
    'html': 'text/html',
    'jpg': 'image/jpeg',
}
DEFAULT_CONTENT_TYPE = 'application/octet-stream'

# -d verbosity -> logging level
log_levels = [
    logging.CRITICAL,
    logging.ERROR,
    logging.WARNING,
    logging.INFO,
    logging.DEBUG,
]


class Status(enum.Enum):
    '''
    Outcome of reading and validating a request header.
    '''
    SUCCESS = 'success'
    BAD_REQUEST = 'bad_request'
    NOT_FOUND = 'not_found'


STATUS_LINES = {
    Status.SUCCESS: 'HTTP/1.0 200 OK',
    Status.BAD_REQUEST: 'HTTP/1.0 400 Bad Request',
    Status.NOT_FOUND: 'HTTP/1.0 404 Not Found',
}

BAD_REQUEST_BODY = ('<html><body><h1>400 Bad Request</h1>'
                    '<p>Your browser sent a request that this server could not understand.</p>'
                    '</body></html>')
NOT_FOUND_BODY = ('<html><body><h1>404 Not Found</h1>'
                  '<p>The requested file was not found on this server.</p>'
                  '</body></html>')


def status_line(status):
    return STATUS_LINES[status]


def is_valid_filename(filename):
    '''
    Returns true if filename is one of the servable names, with nothing before or after it
    '''
    return VALID_FILE_PATTERN.fullmatch(filename) is not None


def content_type_for(filename):
    '''
    Returns the Content-Type for a filename based on its extension
    '''
    _, ext = os.path.splitext(filename)
    return content_types.get(ext[1:].lower(), DEFAULT_CONTENT_TYPE)


def content_path(filename):
    return os.path.join(CONTENT_ROOT, filename)


def log_level_for(verbosity):
    '''
    Maps the integer verbosity from the command line to a logging level.
    Out of range values are clamped to the quietest or loudest level.
    '''
    verbosity = max(0, min(verbosity, len(log_levels) - 1))
    return log_levels[verbosity]
