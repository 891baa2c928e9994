"""Pseudo-terminal shell used as the carrier for a server process."""
import codecs
import os
import pty
import subprocess
import threading

from mchost.core.errors import SpawnFailure

READ_CHUNK_BYTES = 4096
PUMP_JOIN_SECONDS = 2.0


class PtyShell:
    """Interactive shell on a pty with a daemon output pump.

    ``on_output`` receives decoded text chunks in arrival order from the
    pump thread; ``on_exit`` fires once when the pty closes. The pump owns
    ``master_fd`` and closes it when reading stops, so the descriptor number
    is never released while a read on it may still be pending.
    """

    def __init__(self, shell_executable, cwd, on_output, on_exit=None, env=None):
        self._on_output = on_output
        self._on_exit = on_exit
        self._write_lock = threading.Lock()
        self._closed = False
        shell_env = dict(os.environ if env is None else env)
        shell_env["TERM"] = "xterm-color"
        shell_env["BASH_SILENCE_DEPRECATION_WARNING"] = "1"
        master_fd, slave_fd = pty.openpty()
        try:
            self.process = subprocess.Popen(
                [shell_executable],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd),
                env=shell_env,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as exc:
            os.close(master_fd)
            os.close(slave_fd)
            raise SpawnFailure(f"Could not start shell: {exc}") from exc
        os.close(slave_fd)
        self.master_fd = master_fd
        self._pump = threading.Thread(target=self._pump_output, daemon=True)
        self._pump.start()

    @property
    def pid(self):
        return self.process.pid

    @property
    def is_alive(self):
        return not self._closed and self.process.poll() is None

    def _pump_output(self):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                try:
                    data = os.read(self.master_fd, READ_CHUNK_BYTES)
                except OSError:
                    break
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._on_output(text)
        finally:
            with self._write_lock:
                self._closed = True
                os.close(self.master_fd)
        tail = decoder.decode(b"", final=True)
        if tail:
            self._on_output(tail)
        if self._on_exit is not None:
            self._on_exit()

    def write(self, text):
        payload = str(text).encode("utf-8")
        with self._write_lock:
            if self._closed:
                raise OSError("shell is closed")
            view = memoryview(payload)
            while view:
                written = os.write(self.master_fd, view)
                view = view[written:]

    def close(self):
        """Kill the shell and wait for the pump to release the pty."""
        with self._write_lock:
            self._closed = True
        try:
            self.process.kill()
        except OSError:
            pass
        try:
            self.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            pass
        if threading.current_thread() is not self._pump:
            self._pump.join(PUMP_JOIN_SECONDS)
