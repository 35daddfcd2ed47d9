from .dedup import DedupGuard, execution_identity
from .position_reconstructor import Position, PositionReconstructor, split_execution
