'''
This module defines the behaviour of the web server.

A very limited subset of HTTP/1.0 is implemented:
    - GET requests are processed, all other methods result in 400.
      All other header lines are ignored.
    - Files are only served from the data directory and must be named
      file<digit>.html or image<digit>.jpg, anything else results in 404.
    - One connection is handled at a time.
    - Port 1701 is the default, if it is in use the next free port is used.
    - The program is terminated with SIGINT (ctrl-C).
'''
import sys
import errno
import getopt
import logging
import os
import signal
import socket
import threading
import webutil

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class RequestAborted(Exception):
    '''
    Raised when a shutdown is requested before a complete header was received.
    '''


def read_header(conn, shutdown=None):
    '''
    Reads the request header from conn and validates it.
    Returns a (status, filename) pair, filename is None unless status is SUCCESS.
    '''
    request = b''
    header_complete = False
    terminator = webutil.HEADER_TERMINATOR

    # loop through and read header
    while not header_complete:
        if shutdown is not None and shutdown.is_set():
            raise RequestAborted('shutdown requested before the header was complete')

        try:
            data = conn.recv(webutil.BUFFER_SIZE)
        except OSError as e:
            logger.error('Error reading from socket: %s', e)
            return webutil.Status.BAD_REQUEST, None

        if not data:
            logger.debug('Client closed connection before sending complete header')
            return webutil.Status.BAD_REQUEST, None

        # the terminator may straddle the previous chunk
        search_start = max(0, len(request) - len(terminator) + 1)
        request += data
        header_end = request.find(terminator, search_start)
        if header_end != -1:
            header_complete = True
            request = request[:header_end]  # drop anything after the header

    logger.debug('Received request header:\n%s', request.decode('latin-1'))
    return parse_header(request)


def parse_header(request):
    '''
    Validates a complete request header (without the terminator).
    '''
    if request[:3] != b'GET':
        logger.debug('Not a GET request')
        return webutil.Status.BAD_REQUEST, None

    request_line = request.split(b'\r\n', 1)[0]
    start = request_line.find(b' ')
    end = request_line.find(b' ', start + 1) if start != -1 else -1
    if start == -1 or end == -1:
        logger.debug('Malformed request line: %r', request_line)
        return webutil.Status.BAD_REQUEST, None

    # get requested filename
    filename = request_line[start + 1:end].decode('latin-1')
    if filename.startswith('/'):
        filename = filename[1:]
    logger.debug('Extracted filename: %s', filename)

    if not webutil.is_valid_filename(filename):
        logger.debug('Invalid filename: %s', filename)
        return webutil.Status.NOT_FOUND, None

    file_path = webutil.content_path(filename)
    if not os.path.isfile(file_path):
        logger.debug('File does not exist: %s', file_path)
        return webutil.Status.NOT_FOUND, None

    logger.debug('Valid GET request for file: %s', filename)
    return webutil.Status.SUCCESS, filename


def send_line(conn, line):
    conn.sendall((line + '\r\n').encode())


def send_404(conn):
    send_line(conn, webutil.status_line(webutil.Status.NOT_FOUND))
    send_line(conn, 'Content-Type: text/html')
    send_line(conn, '')
    send_line(conn, webutil.NOT_FOUND_BODY)


def send_400(conn):
    send_line(conn, webutil.status_line(webutil.Status.BAD_REQUEST))
    send_line(conn, 'Content-Type: text/html')
    send_line(conn, '')
    send_line(conn, webutil.BAD_REQUEST_BODY)


def send_file(conn, filename):
    '''
    Sends the 200 response for filename, header and body.
    The file is checked again since it may have been removed after validation.
    '''
    file_path = webutil.content_path(filename)
    try:
        file_stat = os.stat(file_path)
    except OSError as e:
        logger.error('File disappeared after validation: %s - %s', file_path, e)
        send_404(conn)
        return

    # send header
    send_line(conn, webutil.status_line(webutil.Status.SUCCESS))
    send_line(conn, f'Content-Type: {webutil.content_type_for(filename)}')
    send_line(conn, f'Content-Length: {file_stat.st_size}')
    send_line(conn, '')

    # send file contents, the connection is closed by the caller on failure
    try:
        with open(file_path, 'rb') as f:
            while True:
                data = f.read(webutil.BUFFER_SIZE)
                if not data:
                    break
                conn.sendall(data)
    except OSError as e:
        logger.error('Failed to send file: %s - %s', file_path, e)
        return

    logger.debug('File sent successfully: %s', filename)


def process_connection(conn, shutdown=None):
    '''
    Processes one request on conn. Always returns 0, the caller closes conn.
    '''
    try:
        status, filename = read_header(conn, shutdown)
    except RequestAborted as e:
        logger.debug('Request aborted: %s', e)
        return 0

    try:
        if status == webutil.Status.SUCCESS:
            send_file(conn, filename)
        elif status == webutil.Status.BAD_REQUEST:
            send_400(conn)
        elif status == webutil.Status.NOT_FOUND:
            send_404(conn)
        else:
            logger.error('Unexpected status: %r', status)
            send_400(conn)
    except OSError as e:
        logger.error('Error writing response: %s', e)

    return 0


class Server:
    '''
    Serial web server, accepts and processes one connection at a time.
    '''

    def __init__(self, port=webutil.DEFAULT_PORT, shutdown=None):
        self.shutdown = shutdown if shutdown is not None else threading.Event()

        try:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        except OSError as e:
            logger.critical('Failed to create socket: %s', e)
            raise
        logger.debug('Created socket with file descriptor %d', self.sock.fileno())
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        self.port = self.bind(port)

        try:
            self.sock.listen(webutil.MAX_BACKLOG_CONNECTIONS)
        except OSError as e:
            logger.critical('Listen failed: %s', e)
            self.sock.close()
            raise

        # wake up regularly to check for shutdown
        self.sock.settimeout(webutil.ACCEPT_TIME_OUT)

    def bind(self, port):
        '''
        Binds to port, or to the next free port if it is in use.
        Returns the port that was bound.
        '''
        while True:
            try:
                self.sock.bind(('', port))
            except OSError as e:
                if e.errno == errno.EADDRINUSE and 0 < port < 65535:
                    logger.warning('Port %d in use, trying next port', port)
                    port += 1
                    continue
                logger.critical('Bind failed: %s', e)
                self.sock.close()
                raise
            return self.sock.getsockname()[1]

    def start(self):
        '''
        Main loop.
        Accept a connection, process it and close it, until shutdown is requested.
        '''
        try:
            while not self.shutdown.is_set():
                try:
                    conn, addr = self.sock.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self.sock.fileno() == -1:
                        break  # listening socket closed underneath us
                    logger.error('Accept failed: %s', e)
                    continue

                conn.settimeout(None)
                logger.debug('Received a connection from %s:%d', addr[0], addr[1])
                with conn:
                    result = process_connection(conn, self.shutdown)
                logger.debug('process_connection returned %d (should always be 0)', result)
        finally:
            self.close()

    def close(self):
        self.sock.close()


def helper():
    print('Web Server')
    print('-d LOG_LEVEL | --debug=LOG_LEVEL Verbosity from 0 (fatal only) to 4 (debug), defaults to 1')
    print(f'-p PORT | --port=PORT The first port to try, defaults to {webutil.DEFAULT_PORT}')
    print('-h | --help Print this help')


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]

    try:
        opts, _ = getopt.getopt(argv, 'd:p:h', ['debug=', 'port=', 'help'])
    except getopt.GetoptError:
        helper()
        sys.exit(2)

    verbosity = webutil.DEFAULT_LOG_LEVEL
    port = webutil.DEFAULT_PORT

    try:
        for o, a in opts:
            if o in ('-d', '--debug'):
                verbosity = int(a)
            elif o in ('-p', '--port'):
                port = int(a)
            elif o in ('-h', '--help'):
                helper()
                sys.exit(0)
    except ValueError:
        helper()
        sys.exit(2)

    logging.basicConfig(level=webutil.log_level_for(verbosity),
                        format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    shutdown = threading.Event()

    def sig_handler(signum, frame):
        logger.info('Caught SIGINT, shutting down.')
        shutdown.set()

    logger.debug('Setting up signal handlers')
    signal.signal(signal.SIGINT, sig_handler)

    try:
        server = Server(port, shutdown)
    except OSError:
        sys.exit(1)

    print(f'Using port: {server.port}')
    server.start()


if __name__ == '__main__':
    main()
