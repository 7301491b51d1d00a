"""
Per-node power down: request "node_off" from capmc, then wait for the node
to be reported in the "off" state.
"""

import enum
import logging
import time

import capmc
import common


logger = logging.getLogger(__name__)

# Number of times to try performing the "node_off" operation
NODE_OFF_RETRIES = 10

# Pause between two "node_off" attempts, in seconds
NODE_OFF_RETRY_DELAY = 1

# How long to wait for a node to enter the "off" state, in seconds
NODE_OFF_STATE_WAIT = 30 * 60


class State(enum.Enum):
    IDLE = 'idle'
    REQUESTING_OFF = 'requesting_off'
    AWAITING_OFF = 'awaiting_off'
    CONVERGED = 'converged'
    TIMED_OUT = 'timed_out'


class NodePowerDown:
    """
    Drive one node to the "off" state.

    run() never raises: every outcome, including unexpected errors, ends up
    in the log. The terminal state is kept in ``state`` and the number of
    node_off attempts in ``attempts``.
    """

    def __init__(self, capmc_path=common.DEFAULT_CAPMC_PATH, poll_freq=common.DEFAULT_CAPMC_POLL_FREQ,
                 timeout_ms=common.DEFAULT_CAPMC_TIMEOUT, retries=None, retry_delay=None,
                 state_wait=None, sleep=None, clock=None):
        self.capmc_path = capmc_path
        self.poll_freq = poll_freq
        self.timeout_ms = timeout_ms
        self.retries = NODE_OFF_RETRIES if retries is None else retries
        self.retry_delay = NODE_OFF_RETRY_DELAY if retry_delay is None else retry_delay
        self.state_wait = NODE_OFF_STATE_WAIT if state_wait is None else state_wait
        self.sleep = sleep or time.sleep
        self.clock = clock or time.monotonic
        self.state = State.IDLE
        self.attempts = 0
        self.node_off_sent = False

    @classmethod
    def from_config(cls, config, **kwargs):
        return cls(
            capmc_path=config['CapmcPath'],
            poll_freq=config['CapmcPollFreq'],
            timeout_ms=config['CapmcTimeout'],
            **kwargs
        )

    def run(self, target):
        try:
            self.request_off(target)
            self.await_off(target)
        except Exception:
            logger.exception('Power down of %s (nid %d) aborted in state %s' %(target.raw_name, target.nid, self.state.value))

    def request_off(self, target):
        self.state = State.REQUESTING_OFF

        while self.attempts < self.retries and not self.node_off_sent:
            self.attempts += 1
            result = capmc.node_off(self.capmc_path, target.nid, self.timeout_ms)
            if capmc.is_success(result):
                logger.debug('node_off sent to %d' %target.nid)
                self.node_off_sent = True
            else:
                logger.error('capmc(node_off,-n,%d): %d %s' %(target.nid, result.status, result.output.decode(errors='replace')))
                self.sleep(self.retry_delay)

        if not self.node_off_sent:
            # capmc may have acted anyway, so keep polling
            logger.error('node_off for %s (nid %d) failed %d times' %(target.raw_name, target.nid, self.attempts))

    def await_off(self, target):
        self.state = State.AWAITING_OFF
        poll_start = self.clock()

        while self.clock() - poll_start < self.state_wait:
            self.sleep(self.poll_freq)
            if capmc.check_node_state(self.capmc_path, target.nid, 'off', self.timeout_ms):
                self.state = State.CONVERGED
                break
        else:
            self.state = State.TIMED_OUT
            logger.error('%s (nid %d) not off after %d seconds' %(target.raw_name, target.nid, self.state_wait))
            return

        if self.node_off_sent:
            logger.info('%s (nid %d) is off, node_off accepted after %d attempt(s)' %(target.raw_name, target.nid, self.attempts))
        else:
            logger.warning('%s (nid %d) reached off state although node_off was never acknowledged' %(target.raw_name, target.nid))
