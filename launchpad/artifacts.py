"""Container build files for generated apps.

Every image is based on node:20-alpine and listens on ``$PORT``, which the
compute platform injects.
"""

DOCKERFILE_PATH = "Dockerfile"
DOCKERIGNORE_PATH = ".dockerignore"

_REACT_VITE = """\
FROM node:20-alpine AS build
WORKDIR /app
COPY package*.json ./
RUN npm install
COPY . .
RUN npm run build

FROM node:20-alpine
WORKDIR /app
RUN npm install -g serve@14
COPY --from=build /app/dist ./dist
CMD sh -c "serve -s dist -l ${PORT:-3000}"
"""

_NODE = """\
FROM node:20-alpine
WORKDIR /app
COPY package*.json ./
RUN npm install --production
COPY . .
CMD ["node", "{entry_point}"]
"""

_NEXT = """\
FROM node:20-alpine AS build
WORKDIR /app
COPY package*.json ./
RUN npm install
COPY . .
RUN npm run build

FROM node:20-alpine
WORKDIR /app
COPY --from=build /app/.next ./.next
COPY --from=build /app/node_modules ./node_modules
COPY --from=build /app/package.json ./package.json
COPY --from=build /app/public ./public
CMD ["npm", "start"]
"""

_STATIC = """\
FROM node:20-alpine
WORKDIR /app
RUN npm install -g serve@14
COPY . .
CMD sh -c "serve -s . -l ${PORT:-3000}"
"""

DOCKERIGNORE = """\
node_modules
.env
.env.local
.git
.gitignore
dist
.next
README.md
"""

_TEMPLATES = {
    "react": _REACT_VITE,
    "react + vite": _REACT_VITE,
    "vite": _REACT_VITE,
    "next": _NEXT,
    "nextjs": _NEXT,
    "next.js": _NEXT,
    "static": _STATIC,
}


def generate_dockerfile(app_type: str | None, entry_point: str = "server.js") -> str:
    """Dockerfile for ``app_type``. Unknown types are treated as a Node server."""
    template = _TEMPLATES.get((app_type or "react").strip().lower())
    if template is None:
        return _NODE.replace("{entry_point}", entry_point)
    return template


def missing_build_files(existing_paths: set[str], app_type: str | None) -> dict[str, str]:
    """Build files absent from ``existing_paths``, keyed by path."""
    files = {}
    if DOCKERFILE_PATH not in existing_paths:
        files[DOCKERFILE_PATH] = generate_dockerfile(app_type)
    if DOCKERIGNORE_PATH not in existing_paths:
        files[DOCKERIGNORE_PATH] = DOCKERIGNORE
    return files
