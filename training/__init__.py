"""
MedScan Training Orchestrator
=============================

Background training system that:

1. Accepts training jobs against a ready on-disk dataset.
2. Dispatches them to a bounded pool of worker threads.
3. Trains one of three Keras architectures step by step, with per-epoch
   progress and cooperative cancellation.
4. Evaluates the result (sklearn metrics, confusion matrix).
5. Saves a ``model.json`` + weight-shard artifact and registers it in
   the model catalog for the inference runtime.

Package layout
--------------
exceptions.py    – Error kinds with stable tags and HTTP status codes.
config.py        – ``InputShape`` / ``JobConfig`` dataclasses, bounds, paths.
images.py        – Image decoding and normalisation (Pillow + numpy).
data.py          – Sample indexing, seeded split, lazy batch sources.
architectures.py – ``simple`` / ``default`` / ``mobilenet`` model factory.
train.py         – Step-driven training loop with cancellation.
evaluate.py      – Final evaluation, confusion matrix, metrics persistence.
progress.py      – Progress record and retrying status writes.
registry.py      – Artifact writer/reader and catalog registration/sync.
runner.py        – Worker path for one job (data → train → evaluate → register).
tasks.py         – Submission, dispatcher, cancellation, restart recovery.
"""
