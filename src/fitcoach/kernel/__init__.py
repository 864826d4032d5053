from fitcoach.kernel.bootstrap import AgentStack, build_stack

__all__ = ["AgentStack", "build_stack"]
