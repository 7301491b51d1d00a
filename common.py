import collections
import json
import logging
import os
import re
import subprocess
import sys
import types


dir_path = os.path.dirname(os.path.realpath(__file__))  # Folder where resides the Python files

DEFAULT_CAPMC_PATH = '/opt/cray/capmc/default/bin/capmc'
DEFAULT_CAPMC_POLL_FREQ = 45  # seconds
DEFAULT_CAPMC_TIMEOUT = 10000  # milliseconds
MIN_CAPMC_TIMEOUT = 1000  # milliseconds
DEFAULT_MAX_THREADS = 256


# A node to power down: the name as given by Slurm and the NID passed to capmc
NodeTarget = collections.namedtuple('NodeTarget', ['raw_name', 'nid'])


class HostlistError(Exception):
    pass


# Create and return a logging.Logger object
# - scriptname: name of the program, written on every line along with the pid
# - levelname: log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
# - filename: location of the log file
def get_logger(scriptname, levelname, filename):

    # Handlers go on the root logger so that every module logger is captured
    root = logging.getLogger()

    # Update log level
    log_levels = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }
    root.setLevel(log_levels.get(levelname, logging.DEBUG))

    # Create a console handler
    sh = logging.StreamHandler()
    sh_formatter = logging.Formatter('%%(asctime)s - %s[%%(process)d] - %%(levelname)s - %%(message)s' %scriptname)
    sh.setFormatter(sh_formatter)
    root.addHandler(sh)

    # Create a file handler
    fh = logging.FileHandler(filename)
    fh_formatter = logging.Formatter('%%(asctime)s - %s[%%(process)d] - %%(levelname)s - %%(name)s - %%(message)s' %scriptname)
    fh.setFormatter(fh_formatter)
    root.addHandler(fh)

    return logging.getLogger(scriptname)


# Validate the structure of the config.json file content
# - data: dict loaded from config.json, after defaults were populated
def validate_config(data):

    assert isinstance(data, dict), 'root is not a dict'

    assert data['LogLevel'] in ('CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'), 'root["LogLevel"] is an invalid value'

    assert isinstance(data['LogFile'], str), 'root["LogFile"] is not a string'
    assert isinstance(data['CapmcPath'], str), 'root["CapmcPath"] is not a string'
    assert isinstance(data['SlurmBinPath'], str), 'root["SlurmBinPath"] is not a string'

    for key in ('CapmcPollFreq', 'CapmcTimeout', 'MaxThreads'):
        value = data[key]
        assert isinstance(value, int) and not isinstance(value, bool), 'root["%s"] is not a number' %key
        assert value >= 0, 'root["%s"] is negative' %key

    assert data['MaxThreads'] >= 1, 'root["MaxThreads"] must be at least 1'


# Return the location of the configuration file
def get_config_filename():

    return os.environ.get('CAPMC_SUSPEND_CONFIG', '%s/config.json' %dir_path)


# Load config.json, populate default values and return the raw dict
# - filename: location of the configuration file
def load_config(filename):

    with open(filename, 'r') as f:
        data = json.load(f)

    if not isinstance(data, dict):
        return data

    # Populate default values if unspecified
    data.setdefault('CapmcPath', DEFAULT_CAPMC_PATH)
    data.setdefault('CapmcPollFreq', DEFAULT_CAPMC_POLL_FREQ)
    data.setdefault('CapmcTimeout', DEFAULT_CAPMC_TIMEOUT)
    data.setdefault('LogFile', '%s/capmc_suspend.log' %dir_path)
    data.setdefault('LogLevel', 'DEBUG')
    data.setdefault('SlurmBinPath', '/usr/bin/')
    data.setdefault('MaxThreads', DEFAULT_MAX_THREADS)

    # Make sure that SlurmBinPath ends with a /
    if data['SlurmBinPath'] and isinstance(data['SlurmBinPath'], str) and not data['SlurmBinPath'].endswith('/'):
        data['SlurmBinPath'] += '/'

    # capmc gets at least one second to answer
    timeout = data['CapmcTimeout']
    if isinstance(timeout, int) and not isinstance(timeout, bool) and timeout < MIN_CAPMC_TIMEOUT:
        data['CapmcTimeout'] = MIN_CAPMC_TIMEOUT

    return data


# Create and return logger and config variables
# - scriptname: name of the program
def get_common(scriptname):

    # Load configuration parameters from config.json and merge with default values
    config_filename = get_config_filename()
    try:
        data = load_config(config_filename)
        load_error = None
    except Exception as e:
        data = {}
        load_error = str(e)

    # The logger is needed to report a broken config, so build it from whatever was loaded
    log_file = data.get('LogFile') if isinstance(data, dict) else None
    log_level = data.get('LogLevel') if isinstance(data, dict) else None
    if not isinstance(log_file, str):
        log_file = '%s/capmc_suspend.log' %dir_path
    logger = get_logger(scriptname, log_level, log_file)

    if load_error is not None:
        logger.critical('Failed to load %s - %s' %(config_filename, load_error))
        sys.exit(1)
    logger.debug('Config: %s' %json.dumps(data, indent=4))

    # Validate the structure of config.json
    try:
        validate_config(data)
    except Exception as e:
        logger.critical('File %s is invalid - %s' %(config_filename, e))
        sys.exit(1)

    # Read-only from here on
    config = types.MappingProxyType(data)

    return logger, config


# Run a Slurm command and return output lines
# - command: name of the command such as scontrol
# - arguments: array
# - bin_path: folder holding the Slurm commands, ends with a /
def run_scommand(command, arguments, bin_path):

    scommand_path = '%s%s' %(bin_path, command)
    cmd = [scommand_path] + arguments
    logging.getLogger(__name__).debug('Command %s: %s' %(command, ' '.join(cmd)))
    proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    stdout, stderr = proc.communicate()
    if proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, output=stdout, stderr=stderr)
    return [line.decode() for line in stdout.splitlines()]


# Use 'scontrol show hostnames' to expand the hostlist and return a list of node names
# Duplicates are dropped, the first occurrence keeps its position
# - hostlist: argument passed to SuspendProgram
# - bin_path: folder holding the Slurm commands
def expand_hostlist(hostlist, bin_path):

    try:
        arguments = ['show', 'hostnames', hostlist]
        lines = run_scommand('scontrol', arguments, bin_path)
    except Exception as e:
        raise HostlistError('Invalid hostlist (%s) - %s' %(hostlist, e))

    node_names = []
    seen = set()
    for line in lines:
        node_name = line.strip()
        if node_name and not node_name in seen:
            seen.add(node_name)
            node_names.append(node_name)
    return node_names


# Return the NID of a node: the first run of digits in its name, None if there is none
# - node_name: for example nid00043
def get_nid(node_name):

    match = re.search('[0-9]+', node_name)
    if match:
        return int(match.group(0))
    return None


# Take a list of node names in input and return a list of NodeTarget
# Nodes without a NID can not be passed to capmc and are skipped
def parse_node_names(node_names):

    result = []
    for node_name in node_names:
        nid = get_nid(node_name)
        if nid is None:
            logging.getLogger(__name__).error('No valid NID: %s' %node_name)
            continue
        result.append(NodeTarget(node_name, nid))

    return result
