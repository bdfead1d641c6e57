#!/usr/bin/env python3
"""
Port Forward Relay

Reads routes (alias=localPort->remoteHost:remotePort) and forwards every
local port to its remote. Relays are spread over min(cpu_count, routes)
worker threads.
"""
import logging
import os
import sys
import threading

import psutil

from relay import new_relay_instance
from route_config import load_routes

logger = logging.getLogger(__name__)

CONFIG_FILE = os.environ.get("PORT_FORWARD_CONFIG", "config.properties")
LISTEN_HOST = ""
SHARED_POLL_TIMEOUT = 0.05  # seconds per relay when several share a worker


def worker_count(instance_count):
    cpus = psutil.cpu_count() or 1
    return max(1, min(cpus, instance_count))


def split_among_workers(instances, workers):
    """Deal instances round-robin into one group per worker."""
    return [instances[i::workers] for i in range(workers)]


def serve(instances):
    """Run a group of relays on the calling thread until all of them have failed."""
    if len(instances) == 1:
        instances[0].run()
        return
    for instance in instances:
        logger.info("Relay listening on port %d -> %s:%d", instance.port, *instance.remote_addr)
    while True:
        alive = [instance for instance in instances if not instance.closed]
        if not alive:
            return
        for instance in alive:
            instance.poll(SHARED_POLL_TIMEOUT)


def start_instances(routes):
    instances = []
    for route in routes:
        logger.info("Starting proxy on port %d (%s)...", route.local_port, route.alias)
        instance, error = new_relay_instance(
            (LISTEN_HOST, route.local_port), (route.remote_host, route.remote_port)
        )
        if error is not None:
            logger.error("Failed to start relay %s on port %d: %s", route, route.local_port, error)
            continue
        instances.append(instance)
    return instances


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    config_path = argv[0] if argv else CONFIG_FILE

    routes, messages = load_routes(config_path)
    if messages:
        logger.warning("Config parsing results:")
        for message in messages:
            logger.warning("%s", message)
    if not routes:
        logger.error("No valid routes in %s", config_path)
        return 1

    instances = start_instances(routes)
    if not instances:
        logger.error("No relay could be started")
        return 1

    workers = worker_count(len(instances))
    logger.info("Running %d relay(s) on %d worker(s)", len(instances), workers)
    threads = [
        threading.Thread(target=serve, args=(group,), name=f"relay-worker-{i}", daemon=True)
        for i, group in enumerate(split_among_workers(instances, workers))
    ]
    for t in threads:
        t.start()

    try:
        for t in threads:
            t.join()
    except KeyboardInterrupt:
        logger.info("Stopping...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
