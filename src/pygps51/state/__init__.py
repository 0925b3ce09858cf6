"""State layer.

Pure decision logic applied on top of the store: which trip version wins
(:mod:`pygps51.state.policy`) and which vehicle events two consecutive
readings imply (:mod:`pygps51.state.events`).
"""
