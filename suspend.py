#!/usr/bin/python3
import sys

import common
import dispatcher
import workflow


# Exit status when the hostlist is missing or can not be expanded
EXIT_INVALID_HOSTLIST = 2


def main(argv=None):

    if argv is None:
        argv = sys.argv

    logger, config = common.get_common('capmc_suspend')

    # Retrieve the list of hosts to suspend
    try:
        hostlist = argv[1]
        logger.info('Hostlist: %s' %hostlist)
    except IndexError:
        logger.critical('Missing hostlist argument')
        return EXIT_INVALID_HOSTLIST

    # Expand the hostlist and retrieve a list of node names
    try:
        expanded_hostlist = common.expand_hostlist(hostlist, config['SlurmBinPath'])
    except common.HostlistError as e:
        logger.critical('%s' %e)
        return EXIT_INVALID_HOSTLIST
    logger.debug('Expanded hostlist: %s' %', '.join(expanded_hostlist))

    # Parse the expanded hostlist, nodes without a NID are dropped
    nodes_to_suspend = common.parse_node_names(expanded_hostlist)
    logger.debug('Nodes to suspend: %s' %', '.join('%s=%d' %(node.raw_name, node.nid) for node in nodes_to_suspend))

    def power_down(target):
        workflow.NodePowerDown.from_config(config).run(target)

    dispatcher.dispatch(nodes_to_suspend, config['MaxThreads'], power_down)
    logger.info('Suspend of %d node(s) completed' %len(nodes_to_suspend))

    return 0


if __name__ == '__main__':
    sys.exit(main())
