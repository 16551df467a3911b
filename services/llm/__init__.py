from services.llm.gateway import model_gateway

__all__ = ["model_gateway"]
