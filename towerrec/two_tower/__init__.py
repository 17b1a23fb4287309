"""Two-tower retrieval over MovieLens-100K.

Core idea:
- A user tower (embedding lookup) and an item tower (embedding lookup, or an MLP over
  multi-hot genre flags) map users and movies into the same vector space
- Training treats each batch of observed (user, movie) pairs as a B-way classification:
  every other movie in the batch is a negative for a given user (in-batch softmax)
- Recommendations are the highest dot-product movies the user has not rated yet
"""
