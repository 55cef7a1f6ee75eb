"""Protocols module for the Opentrons sequencer.

Contains what gets sent to the robot: work items (a protocol script plus
its parameters), template rendering, and loading of sequence definition
files. Nothing here talks to the robot; that is `opentrons_sequencer.runner`.

Modules here should import shared types and errors from
`opentrons_sequencer.common`.
"""
