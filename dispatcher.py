import logging
import threading


logger = logging.getLogger(__name__)


class ConcurrencyBudget:
    """Count of running workflows, bounded by max_active."""

    def __init__(self, max_active):
        if max_active < 1:
            raise ValueError('max_active must be at least 1, got %r' %max_active)
        self.max_active = max_active
        self.active = 0
        self._cond = threading.Condition()

    # Block until a slot is free, then take it
    def acquire(self):
        with self._cond:
            while self.active >= self.max_active:
                self._cond.wait()
            self.active += 1

    def release(self):
        with self._cond:
            if self.active <= 0:
                raise RuntimeError('release() called without a matching acquire()')
            self.active -= 1
            self._cond.notify_all()

    # Block until every slot is free
    def wait_idle(self):
        with self._cond:
            while self.active > 0:
                self._cond.wait()


# Run "run_workflow" once per target, at most "max_concurrency" at a time
# Return once every workflow has finished
# - targets: iterable of NodeTarget
# - max_concurrency: maximum number of workflows running at the same time
# - run_workflow: callable taking a NodeTarget
def dispatch(targets, max_concurrency, run_workflow):

    budget = ConcurrencyBudget(max_concurrency)

    def work(target):
        try:
            run_workflow(target)
        except Exception as e:
            logger.error('Workflow for %s failed - %s' %(target.raw_name, e))
        finally:
            budget.release()

    nb_targets = 0
    for target in targets:
        budget.acquire()
        nb_targets += 1
        thread = threading.Thread(target=work, args=(target,), name='node-%s' %target.raw_name, daemon=True)
        try:
            thread.start()
        except RuntimeError as e:
            # No thread available, do the work here rather than drop the node
            logger.warning('Can not start a thread for %s, running inline - %s' %(target.raw_name, e))
            work(target)

    # Wait for work threads to complete
    budget.wait_idle()
    logger.debug('All %d workflows completed' %nb_targets)
