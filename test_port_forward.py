import os
import socket
import tempfile
import unittest
from unittest import mock

import port_forward
from route_config import Route


class FakeInstance:
    """Stands in for a RelayInstance that fails after a few polls."""

    def __init__(self, polls_before_failure, port=1):
        self.remaining = polls_before_failure
        self.port = port
        self.remote_addr = ("127.0.0.1", 9)
        self.closed = False
        self.polls = 0
        self.ran = False

    def poll(self, timeout=None):
        self.polls += 1
        self.remaining -= 1
        if self.remaining <= 0:
            self.closed = True

    def run(self):
        self.ran = True
        while not self.closed:
            self.poll()


class TestWorkers(unittest.TestCase):
    def test_worker_count_is_bounded_by_cpus_and_instances(self):
        with mock.patch("port_forward.psutil.cpu_count", return_value=4):
            self.assertEqual(port_forward.worker_count(2), 2)
            self.assertEqual(port_forward.worker_count(4), 4)
            self.assertEqual(port_forward.worker_count(10), 4)

    def test_worker_count_without_cpu_info(self):
        with mock.patch("port_forward.psutil.cpu_count", return_value=None):
            self.assertEqual(port_forward.worker_count(3), 1)

    def test_split_among_workers_round_robin(self):
        groups = port_forward.split_among_workers(list(range(7)), 3)
        self.assertEqual(groups, [[0, 3, 6], [1, 4], [2, 5]])

    def test_serve_single_instance_uses_run(self):
        instance = FakeInstance(3)
        port_forward.serve([instance])
        self.assertTrue(instance.ran)

    def test_serve_shares_worker_until_all_fail(self):
        short, long = FakeInstance(2, port=1), FakeInstance(5, port=2)
        port_forward.serve([short, long])
        self.assertEqual(short.polls, 2)
        self.assertEqual(long.polls, 5)
        self.assertFalse(short.ran or long.ran)


class TestStartInstances(unittest.TestCase):
    def test_busy_port_is_logged_and_skipped(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(("", 0))
            taken.listen(1)
            port = taken.getsockname()[1]
            with self.assertLogs("port_forward", level="ERROR") as logs:
                instances = port_forward.start_instances([Route("busy", port, "127.0.0.1", 9)])
        self.assertEqual(instances, [])
        self.assertIn(str(port), logs.output[0])

    def test_free_port_starts_instance(self):
        instances = port_forward.start_instances([Route("free", 0, "127.0.0.1", 9)])
        try:
            self.assertEqual(len(instances), 1)
            self.assertFalse(instances[0].closed)
        finally:
            for instance in instances:
                instance.close()


class TestMain(unittest.TestCase):
    def test_missing_config_exits_with_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertLogs("port_forward", level="WARNING"):
                self.assertEqual(port_forward.main([os.path.join(tmp, "missing.properties")]), 1)

    def test_config_without_valid_routes_exits_with_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "config.properties")
            with open(path, "w", encoding="utf-8") as f:
                f.write("# nothing here\nbroken=line\n")
            with self.assertLogs("port_forward", level="WARNING") as logs:
                self.assertEqual(port_forward.main([path]), 1)
        self.assertTrue(any("No valid routes" in line for line in logs.output))


if __name__ == '__main__':
    unittest.main()
