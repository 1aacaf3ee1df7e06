#!/usr/bin/env python3

# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import sys
import argparse
import json
import asyncio
import logging
from signal import SIGINT, SIGTERM

from wizlight_protocol.internal_types import *

from wizlight_protocol import (
    __version__ as pkg_version,
    WizConfig,
    WizDevice,
    WizPushManager,
    WizDialListener,
    WizDiscoveryRequest,
    WizMessage,
    DialEvent,
    PilotState,
    decode_message,
    send,
  )

class CmdExitError(RuntimeError):
    exit_code: int

    def __init__(self, exit_code: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Command exited with return code {exit_code}"
        super().__init__(msg)
        self.exit_code = exit_code

class ArgparseExitError(CmdExitError):
    pass

class NoExitArgumentParser(argparse.ArgumentParser):
    def exit(self, status=0, message=None):
        if message:
            self._print_message(message, sys.stderr)
        raise ArgparseExitError(status, message)

def _print_json(data: Jsonable) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))
    sys.stdout.flush()

def _dial_event_summary(event: DialEvent) -> JsonableDict:
    return {
        "mac": event.mac,
        "type": event.event_type.name,
        "sequence": event.sequence,
        "raw_type": event.raw_type,
        "action": event.action,
        "state": event.state,
        "frame": event.frame,
        "utc_time": event.utc_time.isoformat(),
      }

class CommandHandler:
    _argv: Optional[Sequence[str]]
    _parser: argparse.ArgumentParser
    _args: argparse.Namespace
    _config: WizConfig
    _provide_traceback: bool = True

    def __init__(self, argv: Optional[Sequence[str]]=None):
        self._argv = argv

    async def cmd_bare(self) -> int:
        print("A command is required", file=sys.stderr)
        return 1

    def _load_config(self) -> WizConfig:
        config_file: Optional[str] = self._args.config_file
        cfg = WizConfig() if config_file is None else WizConfig.load_file(config_file)
        if not self._args.source_ip is None:
            cfg.source_ip = self._args.source_ip
        if not self._args.device_port is None:
            cfg.device_port = self._args.device_port
        return cfg

    async def _wait_for_interrupt(self) -> None:
        """Waits until SIGINT or SIGTERM is received."""
        loop = asyncio.get_running_loop()
        interrupted: asyncio.Future[None] = loop.create_future()
        def on_signal() -> None:
            logging.debug("Detected SIGINT/SIGTERM; shutting down")
            if not interrupted.done():
                interrupted.set_result(None)
        for signal in (SIGINT, SIGTERM):
            loop.add_signal_handler(signal, on_signal)
        try:
            await interrupted
        finally:
            for signal in (SIGINT, SIGTERM):
                loop.remove_signal_handler(signal)

    async def cmd_discover(self) -> int:
        cfg = self._config
        wait_time: float = cfg.discovery_wait_time if self._args.wait_time is None else self._args.wait_time
        broadcast_address: str = cfg.broadcast_address if self._args.broadcast_address is None else self._args.broadcast_address
        async with WizDiscoveryRequest(
                broadcast_address=broadcast_address,
                port=cfg.device_port,
                wait_time=wait_time,
                interval=cfg.discovery_interval,
              ) as request:
            async for device in request:
                summary = device.to_json_data()
                summary["utc_time"] = device.utc_time.isoformat()
                _print_json(summary)
        return 0

    async def cmd_send(self) -> int:
        cfg = self._config
        host: str = self._args.host
        method: str = self._args.method
        params: Optional[JsonableDict] = None
        if not self._args.params is None:
            params_data = json.loads(self._args.params)
            if not isinstance(params_data, dict):
                raise CmdExitError(1, f"--params must be a JSON object, got {self._args.params!r}")
            params = params_data
        message = WizMessage(method=method, params=params, include_empty_params=True)
        schedule = cfg.commit_retry if self._args.commit else cfg.retry
        data, addr = await send(message.raw_data, host, port=cfg.device_port, schedule=schedule)
        reply = decode_message(data)
        summary: JsonableDict = {
            "src_addr": f"{addr[0]}:{addr[1]}",
            "reply": reply.json_data,
          }
        _print_json(summary)
        return 1 if reply.is_error else 0

    async def cmd_push(self) -> int:
        cfg = self._config
        hosts: List[str] = self._args.hosts
        push_manager = WizPushManager(
            listen_port=cfg.push_port if self._args.push_port is None else self._args.push_port,
            device_port=cfg.device_port,
            source_ip=cfg.source_ip,
            registration_interval=cfg.registration_interval,
            registration_schedule=cfg.commit_retry,
          )

        def on_first_beat(sender_ip: str, mac: Optional[str]) -> None:
            _print_json({ "event": "firstBeat", "src_ip": sender_ip, "mac": mac })

        def on_push(state: PilotState, sender_ip: str) -> None:
            _print_json({ "event": "syncPilot", "src_ip": sender_ip, "mac": state.mac, "pilot": state.pilot_data })

        push_manager.set_discovery_callback(on_first_beat)
        devices = [ WizDevice(host, port=cfg.device_port, push_manager=push_manager, schedule=cfg.retry,
                              commit_schedule=cfg.commit_retry) for host in hosts ]
        try:
            for device in devices:
                if not await device.start_push(on_push):
                    raise CmdExitError(1, f"Unable to receive pushes from {device.host}: {push_manager.fail_reason}")
                logging.info(f"Receiving pushes from {device}")
            await self._wait_for_interrupt()
        finally:
            for device in devices:
                await device.stop_push()
            await push_manager.stop()
        return 0

    async def cmd_dial(self) -> int:
        cfg = self._config
        port: int = cfg.dial_port if self._args.dial_port is None else self._args.dial_port
        macs: List[str] = self._args.macs
        listener = WizDialListener(port=port, debounce_window=cfg.debounce_window)

        def on_event(event: DialEvent) -> None:
            _print_json(_dial_event_summary(event))

        if len(macs) == 0:
            listener.set_global_callback(on_event)
        else:
            for mac in macs:
                listener.subscribe(mac, on_event)
        if not await listener.start():
            raise CmdExitError(1, listener.fail_reason)
        try:
            await self._wait_for_interrupt()
        finally:
            await listener.stop()
        return 0

    async def cmd_version(self) -> int:
        print(pkg_version)
        return 0

    async def arun(self) -> int:
        """Run the wizlight command-line tool with provided arguments

        Args:
            argv (Optional[Sequence[str]], optional):
                A list of commandline arguments (NOT including the program as argv[0]!),
                or None to use sys.argv[1:]. Defaults to None.

        Returns:
            int: The exit code that would be returned if this were run as a standalone command.
        """
        parser = NoExitArgumentParser(description="Control and monitor WiZ lights and Smart Dials.")


        # ======================= Main command

        self._parser = parser
        parser.add_argument('--traceback', "--tb", action='store_true', default=False,
                            help='Display detailed exception information')
        parser.add_argument('--log-level', dest='log_level', default='warning',
                            choices=['debug', 'info', 'warning', 'error', 'critical'],
                            help='''The logging level to use. Default: warning''')
        parser.add_argument('-c', '--config', dest='config_file', default=None,
                            help='''A JSON configuration file. Default: built-in defaults''')
        parser.add_argument('--source-ip', dest='source_ip', default=None,
                            help='''The local IP address to advertise to devices. Default: chosen automatically''')
        parser.add_argument('--device-port', dest='device_port', type=int, default=None,
                            help='''The UDP port devices listen on. Default: 38899''')
        parser.set_defaults(func=self.cmd_bare)

        subparsers = parser.add_subparsers(
                            title='Commands',
                            description='Valid commands',
                            help='Additional help available with "<command-name> -h"')


        # ======================= discover

        parser_discover = subparsers.add_parser('discover', description="Search for WiZ devices")
        parser_discover.add_argument('-b', '--broadcast', dest='broadcast_address', default=None,
                            help='''The broadcast address to search on. Default: 255.255.255.255''')
        parser_discover.add_argument('--wait-time', dest='wait_time', type=float, default=None,
                            help='''The amount of time to wait for responses, in seconds. Default: 5.0''')
        parser_discover.set_defaults(func=self.cmd_discover)

        # ======================= send

        parser_send = subparsers.add_parser('send', description="Send a single command to a device and display the reply")
        parser_send.add_argument('host', help='The IP address of the device')
        parser_send.add_argument('method', help='The method name; e.g., "getPilot"')
        parser_send.add_argument('-p', '--params', default=None,
                            help='''The params, as a JSON object; e.g., '{"state": true}'. Default: {}''')
        parser_send.add_argument('--commit', action='store_true', default=False,
                            help='Use the shorter retry schedule meant for state changes')
        parser_send.set_defaults(func=self.cmd_send)

        # ======================= push

        parser_push = subparsers.add_parser('push', description="Display state pushes from devices until interrupted")
        parser_push.add_argument('hosts', nargs='+', help='The IP addresses of the devices to register with')
        parser_push.add_argument('--push-port', dest='push_port', type=int, default=None,
                            help='''The local port to receive pushes on. Default: 38900''')
        parser_push.set_defaults(func=self.cmd_push)

        # ======================= dial

        parser_dial = subparsers.add_parser('dial', description="Display Smart Dial events until interrupted")
        parser_dial.add_argument('macs', nargs='*', help='Only display events from these dials. Default: all dials')
        parser_dial.add_argument('--dial-port', dest='dial_port', type=int, default=None,
                            help='''The local port to receive dial events on. Default: 38899''')
        parser_dial.set_defaults(func=self.cmd_dial)

        # ======================= version

        parser_version = subparsers.add_parser('version',
                                description='''Display version information.''')
        parser_version.set_defaults(func=self.cmd_version)

        # =========================================================

        try:
            args = parser.parse_args(self._argv)
        except ArgparseExitError as ex:
            return ex.exit_code
        traceback: bool = args.traceback
        self._provide_traceback = traceback

        try:
            logging.basicConfig(
                level=logging.getLevelName(args.log_level.upper()),
            )
            self._args = args
            self._config = self._load_config()
            func: Callable[[], Awaitable[int]] = args.func
            logging.debug(f"Running command {func.__name__}, tb = {traceback}")
            rc = await func()
            logging.debug(f"Command {func.__name__} returned {rc}")
        except Exception as ex:
            if isinstance(ex, CmdExitError):
                rc = ex.exit_code
            else:
                rc = 1
            if rc != 0:
                if traceback:
                    raise
            print(f"wizlight: error: {ex}", file=sys.stderr)
        except BaseException as ex:
            print(f"wizlight: Unhandled exception: {ex}", file=sys.stderr)
            raise

        return rc

    def run(self) -> int:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            rc = loop.run_until_complete(self.arun())
        finally:
            loop.close()
        return rc

def run(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = CommandHandler(argv).run()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

async def arun(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = await CommandHandler(argv).arun()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

# allow running with "python3 -m", or as a standalone script
if __name__ == "__main__":
    sys.exit(run())
