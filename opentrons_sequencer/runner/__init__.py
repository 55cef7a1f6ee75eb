"""Runner module for the Opentrons sequencer.

Contains everything that talks to the robot: the blocking HTTP transport
(`http_handler`) and the asyncio orchestrator that uploads, starts and
polls runs one work item at a time (`orchestrator`).

This module is designed to be driven from an event loop: blocking HTTP
calls are pushed to the default executor, status polling yields with
`asyncio.sleep`.
"""
