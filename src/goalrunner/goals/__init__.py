"""Goal/task store, scheduling, decomposition and execution.

Control flow: the decomposer writes tasks, the scheduler picks the next
eligible one, the executor runs it and writes the outcome back, and the
repository recomputes goal progress after every completion.
"""
