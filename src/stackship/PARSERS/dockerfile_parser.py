"""
Parsers for build descriptors (Dockerfile syntax), extracting instructions,
their flags and arguments, and splitting them into build phases.
"""
import json
import re
from typing import Dict, List, Optional, Tuple
from ..MODELS.dockerfile_ast import Instruction, BuildPhase, DockerfileAST

FLAG_PATTERN = re.compile(r'^--([a-z-]+)=(\S+)$')


class DockerfileParser:
    """
    Parser for build descriptor instructions.
    """
    def parse(self, dockerfile_path: str) -> DockerfileAST:
        """
        Parses a descriptor from a file path.

        Args:
            dockerfile_path (str): Path to the descriptor.

        Returns:
            DockerfileAST: Parsed phases.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> DockerfileAST:
        """
        Parses a descriptor from a string and groups instructions by ``FROM``.
        """
        ast = DockerfileAST()
        for inst in self.parse_instructions(content):
            if inst.instruction == "FROM":
                base, name = self._parse_from(inst.arguments)
                ast.phases.append(BuildPhase(index=len(ast.phases), base_image=base, name=name))
                continue
            if not ast.phases:
                if inst.instruction == "ARG":
                    continue
                raise ValueError(f"Instruction before FROM: {inst.raw}")
            ast.phases[-1].instructions.append(inst)
        return ast

    def parse_instructions(self, content: str) -> List[Instruction]:
        """
        Parses a descriptor into a flat list of instructions.

        Args:
            content (str): Content of the descriptor.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        instructions = []

        # 1. Remove comments
        content = re.sub(r'^\s*#.*$', '', content, flags=re.MULTILINE)

        # 2. Handle line continuations with \
        content = re.sub(r'\\\s*\n', ' ', content)

        # 3. Match instructions; keywords are case-insensitive
        pattern = re.compile(r'^\s*([A-Za-z]+)\s+(.*)$', re.MULTILINE)

        for match in pattern.finditer(content):
            inst = match.group(1).upper()
            args_str = match.group(2).strip()
            flags, args_str = self._split_flags(args_str)

            # 4. Handle JSON/Exec form vs Shell form
            if args_str.startswith('[') and args_str.endswith(']'):
                try:
                    args = json.loads(args_str)
                except json.JSONDecodeError:
                    args = [args_str]
            elif inst == "ENV":
                if '=' in args_str:
                    args = re.findall(r'(\S+=(?:"[^"]*"|\S+))', args_str)
                else:
                    args = args_str.split(None, 1)
            elif inst in ("COPY", "ADD", "FROM", "EXPOSE", "USER", "WORKDIR", "ARG"):
                args = args_str.split()
            else:
                args = [args_str]

            instructions.append(Instruction(
                instruction=inst,
                arguments=args,
                raw=match.group(0).strip(),
                flags=flags,
            ))

        return instructions

    def _split_flags(self, args_str: str) -> Tuple[Dict[str, str], str]:
        """
        Pulls leading ``--name=value`` flags (e.g. ``COPY --from=build``) off an argument string.
        """
        flags = {}
        parts = args_str.split()
        while parts:
            m = FLAG_PATTERN.match(parts[0])
            if not m:
                break
            flags[m.group(1)] = m.group(2)
            parts.pop(0)
        if not flags:
            return flags, args_str
        return flags, " ".join(parts)

    def _parse_from(self, args: List[str]) -> Tuple[str, Optional[str]]:
        if not args:
            raise ValueError("FROM requires an image")
        if len(args) >= 3 and args[1].upper() == "AS":
            return args[0], args[2]
        return args[0], None
