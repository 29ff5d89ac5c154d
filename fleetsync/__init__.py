"""FleetSync - edge agent for venue display sites"""

__version__ = "1.0.0"
