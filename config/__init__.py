"""
Settings for audio-shield: public values, secrets, and the merged view.

Package code goes through `audio_shield.config.get_settings`.
"""
