"""Counter-Strike 1.6 protocol plugin."""
from gamequery.protocols.source import Source


class Cs16(Source):
    name = "cs16"
    name_long = "Counter-Strike 1.6"
