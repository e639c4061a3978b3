"""
Motion Coach: real-time motion coaching with advisory tips and spoken feedback.
"""
