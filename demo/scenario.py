#!/usr/bin/env python3
"""
FANET Demo Scenario
Simulates a GCS with a chain of UAVs flying away from it, so the outer
UAVs only reach the ground station through the mesh.
"""
import sys
import signal
import logging
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from fanet.config import ScenarioConfig
from fanet.simulation import FanetSimulation

# Configure logging
logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, markup=False)]
)
log = logging.getLogger("demo")
console = Console()

# Scenario Configuration
NODES = [
    {
        "name": "Ground Station",
        "address": "10.0.0.1",
        "is_gcs": True,
        "mobility": {"model": "static", "x": 0.0, "y": 0.0, "z": 0.0}
    },
    {
        "name": "Recon One",
        "address": "10.0.0.2",
        "mobility": {"model": "static", "x": 700.0, "y": 0.0, "z": 120.0}
    },
    {
        "name": "Recon Two",
        "address": "10.0.0.3",
        "mobility": {"model": "static", "x": 1400.0, "y": 100.0, "z": 120.0}
    },
    {
        "name": "Eagle Eye",
        "address": "10.0.0.4",
        "mobility": {"model": "static", "x": 2100.0, "y": 0.0, "z": 150.0}
    },
    {
        "name": "Patrol",
        "address": "10.0.0.5",
        "mobility": {
            "model": "arbitrary",
            "x": 900.0, "y": 600.0, "z": 100.0,
            "min_speed": 5.0, "max_speed": 15.0,
            "area_max_x": 2500.0, "area_max_y": 1500.0
        }
    }
]


class DemoScenario:
    def __init__(self):
        self.running = True
        self.config = ScenarioConfig(
            nodes=NODES,
            max_transmission_range=1000.0,
            duration=400.0,
            seed=7,
        )
        self.simulation = FanetSimulation(self.config)

    def run(self):
        """Run the scenario and render the results."""
        log.info("Running FANET scenario... (Press Ctrl+C to stop)")
        with console.status("Simulating..."):
            summary = self.simulation.run(should_stop=lambda: not self.running)
        self.render(summary)

    def render(self, summary):
        names = {n["address"]: n["name"] for n in NODES}
        table = Table(title="FANET node statistics")
        for column in ("Node", "Address", "Role", "Sent", "Recv", "Data TX", "Data RX",
                       "Neighbors", "GCS route", "Mesh relayed"):
            table.add_column(column)

        for address, s in summary.items():
            table.add_row(
                names.get(address, address),
                address,
                s["role"],
                str(s["sent"]),
                str(s["received"]),
                str(s["data_sent"]),
                str(s["data_received"]),
                str(s["neighbors"]),
                "yes" if s["has_gcs_route"] else "-",
                str(s["mesh_relayed"]),
            )

        console.print(table)
        console.print(f"Delivery ratio: [bold]{self.simulation.delivery_ratio():.2f}[/bold]")

    def stop(self, signum, frame):
        self.running = False
        print("\nStopping simulation...")


if __name__ == "__main__":
    scenario = DemoScenario()
    signal.signal(signal.SIGINT, scenario.stop)

    console.print("[bold green]FANET Demo Scenario[/bold green]")
    scenario.run()
    sys.exit(0)
