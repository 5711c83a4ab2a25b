from lorekeeper.state.generation_state import GenerationState

__all__ = ["GenerationState"]
