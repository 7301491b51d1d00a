import collections
import json
import logging
import os
import select
import shutil
import signal
import subprocess
import time


logger = logging.getLogger(__name__)

# Maximum poll wait time for the child process, in milliseconds
MAX_POLL_WAIT = 500

# Pause between the SIGTERM and the SIGKILL sent to the process group, in seconds
KILL_GRACE = 0.01

# Exit status reported when the command could not be started at all
LAUNCH_FAILURE = 127

READ_SIZE = 4096


# Output of one command: combined stdout/stderr bytes, exit status, timeout flag
CommandResult = collections.namedtuple('CommandResult', ['output', 'status', 'timed_out'])


# Return the path to execute for argv[0], None if it can not be run
def resolve_executable(path):

    if os.sep not in path:
        path = shutil.which(path)
        if path is None:
            return None
    if not os.access(path, os.R_OK | os.X_OK):
        return None
    return path


# Return time in msec since "start_time" (a time.monotonic() value)
def tot_wait(start_time):

    return int((time.monotonic() - start_time) * 1000 + 0.5)


# Send SIGTERM then SIGKILL to the process group led by "pid"
def kill_process_group(pid):

    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            return
        except OSError as e:
            logger.error('killpg(%d, %s): %s' %(pid, sig.name, e))
            return
        if sig == signal.SIGTERM:
            time.sleep(KILL_GRACE)


# Drain the pipe until EOF, a read error or the deadline
# Return the collected output and whether the deadline was hit
# - fd: read end of the pipe, non blocking
# - timeout_ms: overall deadline for the command
def _drain(fd, timeout_ms):

    output = bytearray()
    poller = select.poll()
    poller.register(fd, select.POLLIN | select.POLLHUP | select.POLLERR)
    start_time = time.monotonic()

    while True:
        new_wait = timeout_ms - tot_wait(start_time)
        if new_wait <= 0:
            logger.error('poll() timeout @ %d msec' %timeout_ms)
            return output, True
        new_wait = min(new_wait, MAX_POLL_WAIT)

        try:
            events = poller.poll(new_wait)
        except InterruptedError:
            continue
        except OSError as e:
            logger.error('poll(): %s' %e)
            return output, False
        if not events:
            continue

        _, revents = events[0]
        if not revents & select.POLLIN:
            # Hang-up with nothing left to read
            return output, False

        try:
            data = os.read(fd, READ_SIZE)
        except BlockingIOError:
            continue
        except OSError as e:
            logger.error('read(): %s' %e)
            return output, False
        if not data:
            return output, False
        output.extend(data)


# Run a command and return a CommandResult
# The command runs in its own process group, which is always killed and reaped before returning
# - argv: command and its arguments, argv[0] is the executable
# - timeout_ms: how long the command may run, in milliseconds
def run_command(argv, timeout_ms):

    path = resolve_executable(argv[0])
    if path is None:
        logger.error('Can not execute: %s' %argv[0])
        return CommandResult(b'Slurm node_features/knl_cray configuration error', LAUNCH_FAILURE, False)

    try:
        proc = subprocess.Popen(
            [path] + list(argv[1:]),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            close_fds=True,
            start_new_session=True
        )
    except OSError as e:
        logger.error('Failed to start %s: %s' %(path, e))
        return CommandResult(b'System error', LAUNCH_FAILURE, False)

    fd = proc.stdout.fileno()
    try:
        os.set_blocking(fd, False)
        output, timed_out = _drain(fd, timeout_ms)
    finally:
        kill_process_group(proc.pid)
        proc.wait()
        proc.stdout.close()

    return CommandResult(bytes(output), proc.returncode, timed_out)


# Return the set of NIDs listed under "field" in a capmc JSON response
# Parsing of the list stops at the first entry which is not an integer, entries read before it are kept
# - response: bytes or str returned by capmc
# - field: key to look up, for example "off"
def extract_ids(response, field):

    try:
        document = json.loads(response)
    except ValueError as e:
        logger.error('json parser failed on %r - %s' %(response, e))
        return set()

    if not isinstance(document, dict) or not field in document:
        logger.debug('key=%s not found in nid specification' %field)
        return set()

    values = document[field]
    if not isinstance(values, list):
        logger.error('Unable to parse nid specification: %s is not an array' %field)
        return set()

    nids = set()
    for value in values:
        if not isinstance(value, int) or isinstance(value, bool):
            logger.error('Unable to parse nid specification: %r' %value)
            break
        nids.add(value)
    return nids


# Return True if capmc reported a successful request
def is_success(result):

    return result.status == 0 and b'success' in result.output.lower()


# Request a node power down, for example "capmc node_off -n 43"
def node_off(capmc_path, nid, timeout_ms):

    return run_command([capmc_path, 'node_off', '-n', str(nid)], timeout_ms)


# Query the power state of a node, for example "capmc node_status -n 43"
def node_status(capmc_path, nid, timeout_ms):

    return run_command([capmc_path, 'node_status', '-n', str(nid)], timeout_ms)


# Return True if capmc reports the node in the given state
# - state: field of the node_status response, for example "off"
def check_node_state(capmc_path, nid, state, timeout_ms):

    result = node_status(capmc_path, nid, timeout_ms)
    if result.status != 0:
        logger.error('capmc(node_status,-n,%d): %d %s' %(nid, result.status, result.output.decode(errors='replace')))
        return False

    return nid in extract_ids(result.output, state)
