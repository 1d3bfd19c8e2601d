"""
worker.py: A farm worker reporting to the collector.

    - Reports its lifecycle state (INITIALIZING → INITIALIZED → RUNNING)
    - A background thread sends runtime statistics once per second
    - The main loop blocks on the command channel and reacts to commands

Run collector.py first (a worker started earlier simply loses its first reports):
    python examples/worker.py

Commands understood:
    STOP   : report OFF and exit
    ERROR  : report an error message and the ERROR state
    anything else is echoed back as a statistics entry
"""

import signal
import threading
import time


def report_statistics(ipc, stop_event: threading.Event):
    events = 0
    while not stop_event.is_set():
        events += 1000
        ipc.send_statistics("EventsProcessed", str(events))
        stop_event.wait(1.0)


def main():
    from farm_ipc import ChannelRegistry, State, Transport

    with Transport() as transport, ChannelRegistry(transport) as ipc:
        # Ctrl+C wakes the blocking command wait instead of killing us mid-send
        signal.signal(signal.SIGINT, transport.interrupt)

        ipc.update_state(State.INITIALIZING)
        time.sleep(0.5)
        ipc.update_state(State.INITIALIZED)

        # The statistics thread only uses the statistics sender, the main
        # loop only the command receiver.
        ipc.ensure_client_role()
        stop_event = threading.Event()
        reporter = threading.Thread(
            target=report_statistics, args=(ipc, stop_event), daemon=True
        )
        reporter.start()

        ipc.update_state(State.RUNNING)
        print("[Worker] RUNNING. Waiting for commands (Ctrl+C to quit) …")

        try:
            while True:
                command = ipc.get_next_command()
                if not command:
                    # interrupted or transport trouble
                    print("[Worker] No command (interrupted). Exiting.")
                    break

                print(f"[Worker] Command: {command!r}")
                if command == "STOP":
                    break
                if command == "ERROR":
                    ipc.send_error_message("Operator requested an error")
                    ipc.update_state(State.ERROR)
                    continue
                ipc.send_statistics("LastCommand", command)
        finally:
            stop_event.set()
            reporter.join(timeout=2.0)
            ipc.update_state(State.OFF)
            print(f"[Worker] Final state: {ipc.current_state.name}")


if __name__ == "__main__":
    main()
