"""Branch discovery for remote conversational agents over outbound calls."""

from call_discovery.config import DiscoveryConfig, load_config, validate_config
from call_discovery.engine import DiscoveryEngine, EngineStatus
from call_discovery.models import DiscoverySnapshot, DiscoveryState, FrontierTask, Node, NodeStatus, TreeSummary
from call_discovery.novelty import NoveltyFilter, extract_themes, path_signature
from call_discovery.scheduler import DrainResult, FrontierScheduler, score_candidate
from call_discovery.session import DiscoverySession, build_session
from call_discovery.tree import ConversationTree

__all__ = [
	"ConversationTree",
	"DiscoveryConfig",
	"DiscoveryEngine",
	"DiscoverySession",
	"DiscoverySnapshot",
	"DiscoveryState",
	"DrainResult",
	"EngineStatus",
	"FrontierScheduler",
	"FrontierTask",
	"Node",
	"NodeStatus",
	"NoveltyFilter",
	"TreeSummary",
	"build_session",
	"extract_themes",
	"load_config",
	"path_signature",
	"score_candidate",
	"validate_config",
]
