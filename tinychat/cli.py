"""
tinychat :: CLI

Usage:
    tinychat chat <model_dir> [--temperature 0.9] [--top-k 40] [--top-p 0.9]
    tinychat serve <model_dir> [--port 8000] [--host 127.0.0.1] [--metrics-port 9090]
    tinychat check <model_dir>
    tinychat tokenize <model_dir> <text>

A model directory holds tokenizer.json, an optional special_tokens_map.json,
an optional generation_config.json, and HuggingFace causal LM weights.

INL - 2025
"""

import argparse
import os
import sys

from tinychat.core.logging import setup_logging


def _add_generation_args(p):
    p.add_argument("--temperature", type=float, default=None)
    p.add_argument("--top-k", type=int, default=None, help="0 disables top-k")
    p.add_argument("--top-p", type=float, default=None, help="<= 0 or >= 1 disables top-p")
    p.add_argument("--max-new-tokens", type=int, default=None)
    p.add_argument("--max-context-tokens", type=int, default=None)
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--tokenizer-backend", default="auto", choices=["auto", "hf", "unigram"])
    p.add_argument("--dtype", default="float32", choices=["float16", "bfloat16", "float32"])
    p.add_argument("--device", default=None, help="cpu / cuda (default: auto)")


def _build_engine(args, metrics=None):
    """Tokenizer + model port + config → ChatEngine."""
    from tinychat.core.config import SourcePaths
    from tinychat.core.model_port import load_hf_model_port
    from tinychat.core.tokenizer import load_tokenizer
    from tinychat.engine.chat_engine import ChatEngine

    paths = SourcePaths(model_dir=args.model_dir)
    config = paths.load_generation_config().override(
        temperature=args.temperature,
        top_k=args.top_k,
        top_p=args.top_p,
        max_new_tokens=args.max_new_tokens,
        max_context_tokens=args.max_context_tokens,
        seed=args.seed,
    )
    tokenizer = load_tokenizer(
        args.model_dir,
        backend=args.tokenizer_backend,
        tokenizer_file=paths.tokenizer_file,
        special_tokens_file=paths.special_tokens_file,
    )
    port = load_hf_model_port(
        args.model_dir, device=args.device, dtype=args.dtype, logits_name=config.logits_name,
    )
    return ChatEngine(tokenizer, port, config, metrics=metrics)


def cmd_chat(args):
    """Interactive chat loop."""
    engine = _build_engine(args)
    print(f"tinychat :: {os.path.basename(os.path.abspath(args.model_dir))}")
    print("  /reset clears the conversation, /quit exits")

    while True:
        try:
            text = input("\nyou> ")
        except (EOFError, KeyboardInterrupt):
            print()
            break

        command = text.strip().lower()
        if command in ("/quit", "/exit"):
            break
        if command == "/reset":
            engine.reset_context()
            print("  (context cleared)")
            continue

        try:
            result = engine.run_turn(text)
        except KeyboardInterrupt:
            print("\n  (interrupted)")
            continue
        if result.finish_reason == "empty":
            continue
        print(f"bot> {result.text}")
        if result.finish_reason == "error":
            print(f"  [turn aborted: {result.error}]")


def cmd_serve(args):
    """Start the HTTP server."""
    from tinychat.api.server import ChatServer
    from tinychat.core.metrics import ChatMetrics
    from tinychat.engine.chat_engine import AsyncChatEngine

    model_name = os.path.basename(os.path.abspath(args.model_dir))
    metrics = ChatMetrics(model_name=model_name, port=args.metrics_port) if args.metrics else None
    engine = _build_engine(args, metrics=metrics)
    server = ChatServer(
        async_engine=AsyncChatEngine(engine),
        model_name=model_name,
        host=args.host,
        port=args.port,
    )
    server.run()


def cmd_check(args):
    """Check a model directory: files present, special ids resolved."""
    from tinychat.core.config import SourcePaths
    from tinychat.core.tokenizer import load_tokenizer

    paths = SourcePaths(model_dir=args.model_dir)
    print(f"Model dir:   {paths.model_dir}")

    def _status(path):
        return "OK" if os.path.exists(path) else "MISSING"

    print(f"  {paths.tokenizer_file:<28} {_status(paths.tokenizer_path)}")
    print(f"  {paths.special_tokens_file:<28} {_status(paths.special_tokens_path)} (optional)")
    print(f"  {paths.generation_file:<28} {_status(paths.generation_path)} (optional)")
    weights = [
        name for name in ("model.safetensors", "model.safetensors.index.json", "pytorch_model.bin")
        if os.path.exists(paths.resolve(name))
    ]
    print(f"  {'weights':<28} {', '.join(weights) if weights else 'MISSING'}")

    if not os.path.exists(paths.tokenizer_path):
        sys.exit(1)

    tokenizer = load_tokenizer(args.model_dir, backend=args.tokenizer_backend)
    config = paths.load_generation_config()
    print(f"Tokenizer:   {type(tokenizer).__name__} (vocab={tokenizer.vocab_size})")
    print(f"Special ids: {tokenizer.special_token_ids()} [{tokenizer.special_tokens_status}]")
    print(
        f"Generation:  temperature={config.temperature} top_k={config.top_k} top_p={config.top_p} "
        f"max_new_tokens={config.max_new_tokens} max_context_tokens={config.max_context_tokens}"
    )


def cmd_tokenize(args):
    """Encode text, print ids, decode them back."""
    from tinychat.core.tokenizer import load_tokenizer

    tokenizer = load_tokenizer(args.model_dir, backend=args.tokenizer_backend)
    ids = tokenizer.encode(args.text, add_bos=args.add_bos, add_eos=args.add_eos)
    print(f"ids:     {ids}")
    print(f"pieces:  {[tokenizer.id_to_piece(i) for i in ids]}")
    print(f"decoded: {tokenizer.decode(ids)!r}")


def main():
    parser = argparse.ArgumentParser(
        prog="tinychat",
        description="Local interactive chat over a pretrained causal language model",
    )
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-json", action="store_true", help="JSON log lines on stderr")
    parser.add_argument("--log-file", default=None, help="Also write JSON logs to this file")
    sub = parser.add_subparsers(dest="command")

    # chat
    p_chat = sub.add_parser("chat", help="Interactive chat in the terminal")
    p_chat.add_argument("model_dir")
    _add_generation_args(p_chat)
    p_chat.set_defaults(func=cmd_chat)

    # serve
    p_serve = sub.add_parser("serve", help="Start HTTP chat server")
    p_serve.add_argument("model_dir")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--metrics", action="store_true", help="Enable Prometheus metrics")
    p_serve.add_argument("--metrics-port", type=int, default=None,
                         help="Also expose metrics on a separate port")
    _add_generation_args(p_serve)
    p_serve.set_defaults(func=cmd_serve)

    # check
    p_check = sub.add_parser("check", help="Check a model directory")
    p_check.add_argument("model_dir")
    p_check.add_argument("--tokenizer-backend", default="auto", choices=["auto", "hf", "unigram"])
    p_check.set_defaults(func=cmd_check)

    # tokenize
    p_tok = sub.add_parser("tokenize", help="Encode text and decode it back")
    p_tok.add_argument("model_dir")
    p_tok.add_argument("text")
    p_tok.add_argument("--add-bos", action="store_true")
    p_tok.add_argument("--add-eos", action="store_true")
    p_tok.add_argument("--tokenizer-backend", default="auto", choices=["auto", "hf", "unigram"])
    p_tok.set_defaults(func=cmd_tokenize)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(level=args.log_level, json_output=args.log_json, log_file=args.log_file)
    args.func(args)


if __name__ == "__main__":
    main()
