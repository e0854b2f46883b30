"""Decision store — cases, pressure events and foundations on disk.

Layout of one layer:
    <dir>/.decision-os/
    ├── config.yaml                    # Layer config (project label, scope)
    ├── .active-case                   # Active case id; absent = none
    ├── cases/
    │   └── 0001-add-tile-caching/
    │       ├── case.yaml              # Case
    │       └── pressures.yaml         # {events: [PressureEvent...]}
    └── defaults/
        └── foundations.yaml           # {foundations: [Foundation...]}

Project layers are discovered by walking up from the workspace; the
user-wide layer lives at `~/.decision-os` and is always resolved last.
"""

from decision_os.store.hierarchy import HierarchicalStore, discover_layers
from decision_os.store.layer import CloseResult, LayerStore

__all__ = ["CloseResult", "HierarchicalStore", "LayerStore", "discover_layers"]
