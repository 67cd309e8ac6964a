"""
Non-blocking transport using a background curl process.

Best for long-running servers. The flush call only pays for the process
spawn; the transfer itself runs unsupervised and its outcome is never
reported back.
"""
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from typing import List, Optional

from .. import config
from ..configuration import Configuration
from ..exceptions import ConfigurationError
from .base import Batch, DeliveryOutcome, Transport

logger = logging.getLogger(__name__)


def _format_seconds(value: float) -> str:
    return '%g' % value


class AsyncTransport(Transport):
    """Hands each batch to a detached curl process."""

    name = 'async'

    def __init__(self, configuration: Configuration):
        """
        Initialize the transport.

        Args:
            configuration (Configuration): Delivery policy

        Raises:
            ConfigurationError: If detached processes or curl are unavailable,
                or the temp directory is not writable
        """
        super().__init__(configuration)

        if os.name not in ('posix', 'nt'):
            raise ConfigurationError(
                f"Detached delivery is not supported on platform {os.name!r}"
            )

        self.curl = shutil.which('curl')
        if not self.curl:
            raise ConfigurationError('curl executable is required but not available')

        temp_dir = configuration.temp_dir
        if not os.path.isdir(temp_dir) or not os.access(temp_dir, os.W_OK):
            raise ConfigurationError(f"Temporary directory {temp_dir} is not writable")

    def send(self, batch: Batch) -> DeliveryOutcome:
        encoded = self.encode(batch)

        tmpfile = None
        stdin_data = None
        if len(encoded) > self.config.max_payload_size:
            tmpfile = self._write_temp_file(encoded)
            data_args = ['--data-binary', '@' + tmpfile]
        elif len(encoded) > config.MAX_INLINE_ARG_SIZE:
            stdin_data = encoded.encode('ascii')
            data_args = ['--data-binary', '@-']
        else:
            data_args = ['--data', encoded]

        command = self.build_command(data_args)
        try:
            self._spawn(command, tmpfile, stdin_data)
        except OSError as e:
            logger.error("Failed to start background delivery: %s", str(e))
            if tmpfile:
                self._remove_temp_file(tmpfile)
            return DeliveryOutcome.FAILED

        logger.debug(
            "Handed %d metrics to background delivery%s",
            len(batch), f" via {tmpfile}" if tmpfile else ""
        )
        return DeliveryOutcome.DELEGATED

    def build_command(self, data_args: List[str]) -> List[str]:
        """
        Build the curl invocation for one delivery.

        Args:
            data_args (list): ['--data', payload], ['--data-binary', '@-']
                for a payload piped through stdin, or ['--data-binary', '@path']

        Returns:
            list: curl argument vector
        """
        command = [self.curl, '-X', 'POST', '--ipv4', '--silent']

        for name, value in self.config.headers().items():
            command += ['-H', f"{name}: {value}"]

        command += ['--connect-timeout', _format_seconds(self.config.connect_timeout())]
        command += ['--max-time', _format_seconds(self.config.timeout)]
        command += ['--retry', str(self.config.retry_attempts)]
        command += data_args
        command.append(self.config.endpoint)

        return command

    def _write_temp_file(self, data: str) -> str:
        fd, path = tempfile.mkstemp(prefix='oiq_', dir=self.config.temp_dir)
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(data)
        except OSError:
            self._remove_temp_file(path)
            raise
        return path

    @staticmethod
    def _remove_temp_file(path: str) -> None:
        try:
            os.unlink(path)
        except OSError as e:
            logger.warning("Failed to remove temp file %s: %s", path, str(e))

    @staticmethod
    def _spawn(command: List[str], tmpfile: Optional[str], stdin_data: Optional[bytes] = None) -> None:
        kwargs = {
            'stdin': subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
            'stdout': subprocess.DEVNULL,
            'stderr': subprocess.DEVNULL,
            'close_fds': True,
        }

        if os.name == 'nt':
            kwargs['creationflags'] = (
                subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
            )
            args = command
            if tmpfile:
                args = f'cmd /c {subprocess.list2cmdline(command)} & del /q "{tmpfile}"'
        else:
            kwargs['start_new_session'] = True
            args = command
            if tmpfile:
                # The payload file belongs to the background process from here on
                args = ['/bin/sh', '-c', f"{shlex.join(command)}; rm -f {shlex.quote(tmpfile)}"]

        # Never waited on
        process = subprocess.Popen(args, **kwargs)

        if stdin_data is not None:
            # curl reads the whole body from stdin before connecting
            try:
                process.stdin.write(stdin_data)
            finally:
                process.stdin.close()
