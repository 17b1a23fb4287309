"""Explicit-rating matrix factorization over MovieLens-100K.

Predicts the rating a user would give a movie from the dot product of learned
user/movie embeddings (plus biases), trained with mean-squared error. The
two-tower package covers retrieval; this one covers rating prediction.
"""
