"""
collector.py: The farm collector.

    - Binds the state, statistics and command channels
    - A background thread prints every state and statistics report
    - You type a command and press Enter; the next idle worker gets it

Run this first, then one or more workers:
    python examples/collector.py
    python examples/worker.py

Type 'quit' to exit.
"""

import threading


def monitor(ipc, stop_event: threading.Event):
    """Background thread: drain both report channels."""
    from farm_ipc import State, is_error_message, parse_statistics

    while not stop_event.is_set():
        state = ipc.try_to_receive_state()
        if state is not State.TIMEOUT:
            print(f"[Collector][State] {state.name}")

        frame = ipc.try_to_receive_statistics()
        if frame:
            name, value = parse_statistics(frame)
            tag = "Error" if is_error_message(frame) else "Stats"
            print(f"[Collector][{tag}] {name} = {value}")


def main():
    from farm_ipc import ChannelRegistry, Transport

    with Transport() as transport, ChannelRegistry(transport, timeout=0.2) as ipc:
        if not ipc.ensure_server_role():
            print("[Collector] ERROR: could not bind the farm channels.")
            return

        stop_event = threading.Event()
        monitor_thread = threading.Thread(
            target=monitor, args=(ipc, stop_event), daemon=True
        )
        monitor_thread.start()
        print("[Collector] Listening. Type a command and press Enter, 'quit' to exit.\n")

        try:
            while True:
                try:
                    command = input("Command> ").strip()
                except (EOFError, KeyboardInterrupt):
                    print("\n[Collector] Interrupted. Exiting.")
                    break

                if command.lower() == "quit":
                    break
                if not command:
                    continue
                if ipc.send_command(command):
                    print(f"[Collector] Sent {command!r}")
                else:
                    print(f"[Collector] Could not queue {command!r}")
        finally:
            stop_event.set()
            monitor_thread.join(timeout=2.0)


if __name__ == "__main__":
    main()
