"""Process management for the agent binary.

- ProcessSupervisor: spawn, observe and terminate the OS child process
- ReadinessGate: decide when a freshly spawned process is accepting connections
"""
