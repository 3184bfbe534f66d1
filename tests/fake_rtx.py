"""Scripted stand-in for an RTX router behind a paramiko channel."""
import socket
import threading
import time
from typing import Callable, Dict, List, Optional

BANNER = (
    "\r\n"
    "{name} Rev.14.01.42 (Tue Jan 16 10:21:13 2024)\r\n"
    "  Copyright (c) 1994-2024 Yamaha Corporation. All Rights Reserved.\r\n"
    "\r\n"
)

SHOW_ENVIRONMENT = (
    "{name} BootROM Ver. 1.04\r\n"
    "Main Memory: 256Mbytes, Used: 14%\r\n"
    "CPU: 2%(5sec) 1%(1min) 1%(5min)\r\n"
    "Firmware: exec0\r\n"
    "Elapsed time from boot: 12days 03:44:10\r\n"
)

# Indented lines and comments that end in prompt terminators
SHOW_CONFIG = (
    "# RTX1210 Rev.14.01.42 (Tue Jan 16 10:21:13 2024)\r\n"
    "# Reporting Date: Jan 20 09:00:00 2024\r\n"
    "#\r\n"
    "ip route default gateway pp 1\r\n"
    "ip lan1 address 192.168.100.1/24\r\n"
    "pp select 1\r\n"
    " description pp <PRV/PPPoE>\r\n"
    " pp always-on on\r\n"
    " pppoe use lan2\r\n"
    "dhcp scope 1 192.168.100.2-192.168.100.191/24\r\n"
)


class MockTransport:
    def is_active(self):
        return True


class FakeRTXDevice:
    """Router state shared by every channel opened to it."""

    def __init__(self, name: str = 'RTX1210', admin_password: str = 'admin123'):
        self.name = name
        self.admin_password = admin_password
        self.login_password = ''
        self.reprompt_on_wrong_password = False
        self.host_key_exists = True
        self.host_key_generations = 0
        self.dirty = False
        self.saved = False
        self.save_answers: List[str] = []
        self.save_delay = 0.0
        self.hang_commands = {'hang'}
        self.drop_commands: Dict[str, int] = {}
        self.responses: Dict[str, List[str]] = {}
        self.commands: List[str] = []
        self.channels: List['FakeRTXChannel'] = []
        self.lock = threading.Lock()

    @property
    def normal_prompt(self) -> str:
        return f"[{self.name}] > "

    @property
    def admin_prompt(self) -> str:
        return f"[{self.name}] # "

    def script(self, command: str, *outputs: str):
        """Answer ``command`` with each output in turn; the last one repeats."""
        self.responses[command] = list(outputs)

    def drop_on(self, command: str, times: int = 1):
        """Close the channel instead of answering ``command`` the next ``times`` times."""
        self.drop_commands[command] = times

    def open_channel(self) -> 'FakeRTXChannel':
        channel = FakeRTXChannel(self)
        with self.lock:
            self.channels.append(channel)
        return channel

    def count(self, command: str) -> int:
        with self.lock:
            return self.commands.count(command)

    def _next_response(self, command: str) -> Optional[str]:
        with self.lock:
            outputs = self.responses.get(command)
            if not outputs:
                return None
            return outputs.pop(0) if len(outputs) > 1 else outputs[0]

    def _take_drop(self, command: str) -> bool:
        with self.lock:
            remaining = self.drop_commands.get(command, 0)
            if remaining <= 0:
                return False
            self.drop_commands[command] = remaining - 1
            return True


class FakeRTXChannel:
    """Implements the parts of paramiko.Channel the session uses."""

    def __init__(self, device: FakeRTXDevice):
        self.device = device
        self.closed = False
        self.timeout: Optional[float] = None
        self.admin = False
        self.exit_count = 0
        self.lines: List[str] = []
        self.transport = MockTransport()
        self._cond = threading.Condition()
        self._output = bytearray()
        self._input = ''
        self._echo = True
        self._pending: Optional[Callable[[str], None]] = None
        self.emit(BANNER.format(name=device.name) + self.prompt)

    @property
    def prompt(self) -> str:
        return self.device.admin_prompt if self.admin else self.device.normal_prompt

    # paramiko.Channel surface

    def settimeout(self, timeout):
        self.timeout = timeout

    def gettimeout(self):
        return self.timeout

    def resize_pty(self, width=80, height=24):
        pass

    def get_transport(self):
        return self.transport

    def send(self, data):
        self.sendall(data)
        return len(data)

    def sendall(self, data: bytes):
        if self.closed:
            raise OSError("Socket is closed")
        for char in data.decode('utf-8'):
            if char == '\r':
                line, self._input = self._input, ''
                if self._echo:
                    self.emit('\r\n')
                self._handle(line)
            elif char != '\n':
                self._input += char
                if self._echo:
                    self.emit(char)

    def recv(self, nbytes: int) -> bytes:
        with self._cond:
            expires_at = None if self.timeout is None else time.monotonic() + self.timeout
            while not self._output:
                if self.closed:
                    return b''
                remaining = None if expires_at is None else expires_at - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise socket.timeout()
                self._cond.wait(remaining)
            data = bytes(self._output[:nbytes])
            del self._output[:nbytes]
            return data

    def close(self):
        with self._cond:
            self.closed = True
            self._cond.notify_all()

    # Device side

    def emit(self, text: str):
        with self._cond:
            self._output += text.encode('utf-8')
            self._cond.notify_all()

    def _expect(self, handler: Callable[[str], None], echo: bool):
        self._pending = handler
        self._echo = echo

    def _handle(self, line: str):
        self.lines.append(line)
        if self._pending is not None:
            handler, self._pending = self._pending, None
            self._echo = True
            handler(line)
            return

        command = line.strip()
        with self.device.lock:
            self.device.commands.append(command)

        if self.device._take_drop(command):
            self.close()
            return
        if command in self.device.hang_commands:
            self.emit("partial output\r\n    ip route default gateway 192.168.0.1")
            return

        scripted = self.device._next_response(command)
        if scripted is not None:
            self.emit(scripted + self.prompt)
            return

        handler = getattr(self, '_cmd_' + command.replace(' ', '_').replace('.', '_'), None)
        if handler is not None:
            handler()
        elif command == '':
            self.emit(self.prompt)
        elif command.startswith('show'):
            self.emit(f"output of {command}\r\n" + self.prompt)
        elif command == 'exit':
            self._cmd_exit()
        elif self.admin:
            self.device.dirty = True
            self.emit(self.prompt)
        else:
            self.emit("Error: Permission denied\r\n" + self.prompt)

    def _cmd_console_character_en_ascii(self):
        self.emit(self.prompt)

    def _cmd_console_lines_infinity(self):
        self.emit(self.prompt)

    def _cmd_show_environment(self):
        self.emit(SHOW_ENVIRONMENT.format(name=self.device.name) + self.prompt)

    def _cmd_show_config(self):
        if not self.admin:
            self.emit("Error: Permission denied\r\n" + self.prompt)
            return
        self.emit(SHOW_CONFIG + self.prompt)

    def _cmd_save(self):
        if not self.admin:
            self.emit("Error: Permission denied\r\n" + self.prompt)
            return
        self.device.saved = True
        self.device.dirty = False
        self.emit("Saving ... CONFIG0 Done\r\n" + self.prompt)

    def _cmd_administrator(self):
        if self.admin:
            self.emit(self.prompt)
            return
        self.emit("Password: ")
        self._expect(self._admin_password_entered, echo=False)

    def _admin_password_entered(self, password: str):
        if password == self.device.admin_password:
            self.admin = True
            self.emit("\r\n" + self.prompt)
        elif self.device.reprompt_on_wrong_password:
            self.emit("\r\nPassword: ")
            self._expect(self._admin_password_entered, echo=False)
        else:
            self.emit("\r\nPassword incorrect.\r\n" + self.prompt)

    def _cmd_exit(self):
        self.exit_count += 1
        if not self.admin:
            self.close()
            return
        if self.device.dirty:
            self.emit("Save new configuration ? (Y/N)")
            self._expect(self._save_answered, echo=True)
            return
        self.admin = False
        self.emit(self.prompt)

    def _save_answered(self, answer: str):
        self.device.save_answers.append(answer)
        self.admin = False
        if not answer.strip().upper().startswith('Y'):
            self.emit(self.prompt)
            return
        self.device.saved = True
        self.device.dirty = False
        if not self.device.save_delay:
            self.emit(self.prompt)
            return
        # Flash write in progress
        self.emit("\r\nSaving ... ")
        timer = threading.Timer(self.device.save_delay, self.emit, args=("CONFIG0 Done\r\n" + self.prompt,))
        timer.daemon = True
        timer.start()

    def _cmd_administrator_password(self):
        if not self.admin:
            self.emit("Error: Permission denied\r\n" + self.prompt)
            return
        self.emit("Old_Password: ")
        self._expect(self._old_password_entered, echo=False)

    def _old_password_entered(self, password: str):
        if password != self.device.admin_password:
            self.emit("\r\nPassword incorrect.\r\n" + self.prompt)
            return
        self._ask_new_password(self._set_admin_password)

    def _set_admin_password(self, password: str):
        self.device.admin_password = password

    def _cmd_login_password(self):
        if not self.admin:
            self.emit("Error: Permission denied\r\n" + self.prompt)
            return
        self._ask_new_password(self._set_login_password, prefix='')

    def _set_login_password(self, password: str):
        self.device.login_password = password

    def _ask_new_password(self, apply: Callable[[str], None], prefix: str = '\r\n'):
        self.emit(prefix + "New_Password: ")

        def first(password: str):
            self.emit("\r\nNew_Password: ")

            def second(confirmation: str):
                if confirmation != password:
                    self.emit("\r\nError: Passwords do not match\r\n" + self.prompt)
                    return
                apply(password)
                self.emit("\r\nPassword Strength : Strong\r\n" + self.prompt)
            self._expect(second, echo=False)
        self._expect(first, echo=False)

    def _cmd_sshd_host_key_generate(self):
        if not self.admin:
            self.emit("Error: Permission denied\r\n" + self.prompt)
            return
        if self.device.host_key_exists:
            self.emit("Update host key? (Y/N)")
            self._expect(self._host_key_answered, echo=True)
            return
        self._generate_host_key()

    def _host_key_answered(self, answer: str):
        if answer.strip().lower().startswith('y'):
            self._generate_host_key()
        else:
            self.emit(self.prompt)

    def _generate_host_key(self):
        self.device.host_key_exists = True
        self.device.host_key_generations += 1
        self.emit("Generating host key ... done\r\n" + self.prompt)


class FakeSSHClient:
    """Stands in for a connected paramiko.SSHClient."""

    def __init__(self, device: FakeRTXDevice):
        self.device = device
        self.closed = False
        self.channel: Optional[FakeRTXChannel] = None
        self.term = None

    def invoke_shell(self, term='vt100', width=80, height=24, **kwargs):
        self.term = term
        self.width = width
        self.channel = self.device.open_channel()
        return self.channel

    def get_transport(self):
        return MockTransport()

    def close(self):
        self.closed = True
        if self.channel is not None:
            self.channel.close()
