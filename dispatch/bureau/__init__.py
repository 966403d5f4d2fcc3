"""
Detective Bureau - per-city multi-agent analysis

- CHASE (pursuit), PATTERN (serial crime), PROPHET (prediction),
  HISTORIAN (context) share one CityMemory
- AgentOrchestrator routes incidents and timers to them
- PredictionLedger tracks forecast outcomes
"""
from .base import Agent, Insight, PatternFinding
from .memory import CityMemory
from .ledger import PredictionLedger, prediction_matches
from .pursuit import PursuitAgent, is_pursuit
from .historian import HistorianAgent
from .pattern import PatternAgent, is_similar
from .predictor import PredictorAgent
from .orchestrator import AgentOrchestrator, route_question

__all__ = [
    'Agent',
    'Insight',
    'PatternFinding',
    'CityMemory',
    'PredictionLedger',
    'prediction_matches',
    'PursuitAgent',
    'is_pursuit',
    'HistorianAgent',
    'PatternAgent',
    'is_similar',
    'PredictorAgent',
    'AgentOrchestrator',
    'route_question',
]
